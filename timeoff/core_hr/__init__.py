"""Core HR module — the Employee model the leave engine reads principals from."""

from timeoff.core_hr.models import Employee

__all__ = ["Employee"]
