"""Matching domain: rank analyzed pages against topic pillars."""

from geomigrate.matching.matcher import MatchConfig, MatchingService, MatchResult, build_pillar_text

__all__ = ["MatchConfig", "MatchResult", "MatchingService", "build_pillar_text"]
