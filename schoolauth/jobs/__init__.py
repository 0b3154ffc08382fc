from .maintenance import sweep_expired_sessions_job

__all__ = [
    "sweep_expired_sessions_job",
]
"""Background job modules for RQ workers and schedulers."""
