"""Admission control and tamper-evident audit logging for privileged CLI commands."""

__version__ = "0.1.0"
