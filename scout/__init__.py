"""scout: unattended issue-to-PR run orchestrator."""

__version__ = "0.1.0"
