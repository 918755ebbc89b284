"""stackloop: autonomous agent orchestration over stacked branches."""

__version__ = "0.1.0"
