from src.models.base import Base
from src.models.token import Token, TokenSnapshot

__all__ = [
    "Base",
    "Token",
    "TokenSnapshot",
]
