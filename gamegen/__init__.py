"""gamegen: orchestration core for AI game generation jobs."""

__version__ = "0.1.0"
