"""qualflow content analysis: guide parsing, per-question extraction, worker."""

from qualflow.analysis.extractor import Answer, Extractor
from qualflow.analysis.guide import Question, parse_guide
from qualflow.analysis.worker import AnalysisRunResult, AnalysisWorker

__all__ = [
    "AnalysisRunResult",
    "AnalysisWorker",
    "Answer",
    "Extractor",
    "Question",
    "parse_guide",
]
