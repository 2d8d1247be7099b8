from __future__ import annotations

import math
import re
from collections import Counter
from dataclasses import asdict, dataclass
from typing import Any


class ScoringError(ValueError):
    pass


_TOKEN_RE = re.compile(r"[a-z0-9][a-z0-9+#.\-]*[a-z0-9+#]|[a-z0-9]")

_STOPWORDS = frozenset(
    """
    a an and are as at be been but by can for from has have in into is it its of on or our
    that the their this to was we will with you your they them who what which when where
    all any each more most other such than too very per via also within across using use
    """.split()
)

# Standard Okapi BM25 parameters.
_K1 = 1.5
_B = 0.75


@dataclass(frozen=True)
class BM25Signals:
    score: float  # BM25 of the whole job-term query against the resume, summed over sections
    coverage: float  # fraction of distinct job terms present anywhere in the resume
    matched_terms: list[str]
    missing_terms: list[str]
    top_sections: list[dict[str, Any]]

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def tokenize(text: str) -> list[str]:
    tokens = _TOKEN_RE.findall((text or "").lower())
    return [t for t in tokens if t not in _STOPWORDS and len(t) > 1]


def _split_sections(text: str) -> list[str]:
    """Resume sections: blank-line separated blocks, or single lines when there are no blank lines."""
    blocks = [b.strip() for b in re.split(r"\n\s*\n", text or "") if b.strip()]
    if len(blocks) <= 1:
        blocks = [ln.strip() for ln in (text or "").splitlines() if ln.strip()]
    return blocks


def _idf(n_docs: int, df: int) -> float:
    return math.log(1.0 + (n_docs - df + 0.5) / (df + 0.5))


def compute_signals(resume_text: str, job_text: str, *, top_terms: int = 25, top_sections: int = 3) -> dict[str, Any]:
    """Lexical match between a resume and a job description.

    Each resume section is a BM25 document; the query is the `top_terms` most
    frequent job-description terms. Raises ScoringError on empty input.
    """
    sections = _split_sections(resume_text)
    job_counts = Counter(tokenize(job_text))
    if not sections:
        raise ScoringError("resume text has no scorable content")
    if not job_counts:
        raise ScoringError("job text has no scorable content")

    query = [t for t, _ in job_counts.most_common(top_terms)]
    docs = [tokenize(s) for s in sections]
    n_docs = len(docs)
    avgdl = (sum(len(d) for d in docs) / n_docs) or 1.0
    df = Counter(t for d in docs for t in set(d))

    scored: list[tuple[float, int]] = []
    for i, doc in enumerate(docs):
        tf = Counter(doc)
        dl = len(doc)
        s = 0.0
        for term in query:
            f = tf.get(term, 0)
            if not f:
                continue
            s += _idf(n_docs, df[term]) * (f * (_K1 + 1)) / (f + _K1 * (1 - _B + _B * dl / avgdl))
        scored.append((s, i))

    present = set(df)
    matched = [t for t in query if t in present]
    missing = [t for t in query if t not in present]
    best = sorted(scored, key=lambda x: (-x[0], x[1]))[:top_sections]

    return BM25Signals(
        score=round(sum(s for s, _ in scored), 4),
        coverage=round(len(matched) / len(query), 4),
        matched_terms=matched,
        missing_terms=missing,
        top_sections=[
            {"index": i, "score": round(s, 4), "excerpt": sections[i][:160]} for s, i in best if s > 0
        ],
    ).to_dict()
