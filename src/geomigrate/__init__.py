"""geomigrate: migrate legacy websites into generative-engine-optimized drafts."""

__version__ = "0.1.0"
