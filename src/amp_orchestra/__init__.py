"""Launch core for the Amp desktop orchestrator."""

__version__ = "0.3.0"
