"""Queue payloads per job type; also stored on the job record for resume."""

from __future__ import annotations

from pydantic import BaseModel, Field

from geomigrate.crawl.models import CrawlConfig
from geomigrate.generation.models import GenerationConfig
from geomigrate.matching.matcher import MatchConfig


class CrawlJobPayload(BaseModel):
    project_id: str
    base_url: str
    config: CrawlConfig = Field(default_factory=CrawlConfig)


class AnalyzeJobPayload(BaseModel):
    project_id: str
    page_ids: list[str] | None = None


class MatchJobPayload(BaseModel):
    pillar_id: str
    config: MatchConfig = Field(default_factory=MatchConfig)


class GenerateJobPayload(BaseModel):
    pillar_id: str
    config: GenerationConfig = Field(default_factory=GenerationConfig)
