"""CLI command handlers."""

from .run import run_workflow
from .resume import resume_workflow
from .providers import list_providers

__all__ = ['run_workflow', 'resume_workflow', 'list_providers']
