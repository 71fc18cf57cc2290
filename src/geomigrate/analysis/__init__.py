"""Analysis domain: embeddings, topics and quality scoring for pages."""

from geomigrate.analysis.analyzer import AnalysisService, PageAnalysis, calculate_quality_score

__all__ = ["AnalysisService", "PageAnalysis", "calculate_quality_score"]
