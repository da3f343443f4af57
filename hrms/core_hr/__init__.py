"""Core HR module — the Employee identity model."""

from hrms.core_hr.models import Employee

__all__ = ["Employee"]
