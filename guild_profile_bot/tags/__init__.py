from .engine import BulkTagResult, TagMembershipEngine

__all__ = ["BulkTagResult", "TagMembershipEngine"]
