"""Adapters for integrating opsdash with storage and frameworks."""

from .sqlalchemy_repo import SQLAlchemyEngagementRepository

__all__ = ["SQLAlchemyEngagementRepository"]
