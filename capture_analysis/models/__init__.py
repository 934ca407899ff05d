from capture_analysis.models.capture import Capture
from capture_analysis.models.job import AnalysisJob

__all__ = ["Capture", "AnalysisJob"]
