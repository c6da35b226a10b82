"""
Docflow Workflow Engine

A data-driven workflow orchestration engine that drives documents through
organization-defined approval pipelines, assigns work to roles, enforces
service levels and escalates breaches.
"""

__version__ = "1.0.0"
