"""
Bill Workflow Hub - Routes Package

Modular API routers for the Bill Workflow Hub.
"""

from .workflows import router as workflows_router, set_dependencies as set_workflows_deps
from .reports import router as reports_router, set_dependencies as set_reports_deps

__all__ = [
    'workflows_router', 'set_workflows_deps',
    'reports_router', 'set_reports_deps',
]
