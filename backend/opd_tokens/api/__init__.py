"""
HTTP blueprints for the token engine.
"""

from opd_tokens.api.tokens import bp as tokens_bp

__all__ = ["tokens_bp"]
