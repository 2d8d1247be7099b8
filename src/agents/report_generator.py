from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from src.llm.openai_compat import OpenAICompatibleChatClient
from src.utils.errors import InvalidUpstreamResponse, UpstreamFailure
from src.utils.json_extract import JSONExtractionError, extract_json_object


logger = logging.getLogger(__name__)


SYSTEM_PROMPT = (
    "You are an expert ATS (Applicant Tracking System) analyzer. You analyze resumes against "
    "job descriptions and provide structured JSON responses."
)

RESPONSE_SHAPE = """{
  "ats_report": {
    "score": <number between 0.0 and 1.0>,
    "notes": ["<string>", ...]
  },
  "change_plan": {
    "changes": ["<string>", ...]
  }
}"""


@dataclass(frozen=True)
class ScoreReport:
    score: float
    notes: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"score": self.score, "notes": list(self.notes)}


@dataclass(frozen=True)
class ChangePlan:
    changes: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"changes": list(self.changes)}


class _ATSReportModel(BaseModel):
    score: float = Field(ge=0.0, le=1.0)
    notes: list[str] = Field(default_factory=list)


class _ChangePlanModel(BaseModel):
    changes: list[str] = Field(default_factory=list)


class _ReportResponseModel(BaseModel):
    ats_report: _ATSReportModel
    change_plan: _ChangePlanModel = Field(default_factory=_ChangePlanModel)


def build_prompt(resume_text: str, job_text: str, signals: dict[str, Any] | None) -> str:
    parts = [
        "Analyze the following resume against the job description and provide:",
        "1. An ATS compatibility score (0.0 to 1.0)",
        "2. Notes explaining the score",
        "3. A change plan with specific recommendations",
        "",
        "RESUME:",
        resume_text,
        "",
        "JOB DESCRIPTION:",
        job_text,
        "",
    ]
    if signals:
        parts += [
            "LEXICAL MATCH SIGNALS (BM25):",
            json.dumps(
                {
                    "coverage": signals.get("coverage"),
                    "matched_terms": signals.get("matched_terms", []),
                    "missing_terms": signals.get("missing_terms", []),
                },
                ensure_ascii=False,
            ),
            "",
        ]
    parts += ["Respond with a JSON object in this exact format:", RESPONSE_SHAPE]
    return "\n".join(parts)


def parse_report_response(content: str) -> tuple[ScoreReport, ChangePlan]:
    """Validate generator output. Raises InvalidUpstreamResponse on any shape or range problem."""
    try:
        obj = extract_json_object(content)
    except JSONExtractionError as e:
        raise InvalidUpstreamResponse(f"failed to parse report response: {e}") from e

    try:
        parsed = _ReportResponseModel.model_validate(obj)
    except ValidationError as e:
        raise InvalidUpstreamResponse(f"invalid report response: {e.errors(include_url=False)}") from e

    return (
        ScoreReport(score=float(parsed.ats_report.score), notes=list(parsed.ats_report.notes)),
        ChangePlan(changes=list(parsed.change_plan.changes)),
    )


class ReportGenerator:
    """Produces the ATS score report and change plan for one run via the LLM."""

    def __init__(self, llm: OpenAICompatibleChatClient, *, temperature: float = 0.2) -> None:
        self._llm = llm
        self._temperature = float(temperature)

    def generate(
        self,
        resume_text: str,
        job_text: str,
        signals: dict[str, Any] | None,
    ) -> tuple[ScoreReport, ChangePlan]:
        prompt = build_prompt(resume_text, job_text, signals)
        try:
            result = self._llm.chat_json(system=SYSTEM_PROMPT, user=prompt, temperature=self._temperature)
        except Exception as e:
            # openai.APIError / APITimeoutError / httpx transport errors all land here.
            raise UpstreamFailure(f"report generation request failed: {type(e).__name__}: {e}") from e

        if not result.content:
            raise InvalidUpstreamResponse("empty content in report response")
        report, plan = parse_report_response(result.content)
        logger.debug("report generated model=%s score=%.3f changes=%d", result.model, report.score, len(plan.changes))
        return report, plan
