"""
Member Service - Configuration Apply

Responsibilities:
- Join the locator with declared groups
- Apply regions, properties and artifacts locally
- Accept incremental artifact pushes
"""

from .agent import LoadedUnit, MemberAgent
from .service import MemberService

__all__ = ["LoadedUnit", "MemberAgent", "MemberService"]
