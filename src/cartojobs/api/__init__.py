"""HTTP surface for job submission and status polling."""

from cartojobs.api.app import create_app

__all__ = ["create_app"]
