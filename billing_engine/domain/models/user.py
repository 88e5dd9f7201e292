"""User domain model as seen by the billing engine."""

from datetime import datetime
from typing import Optional


class User:
    """
    Billing view of an application user.

    Attributes:
        id: Unique identifier
        email: User email address (unique)
        created_at: Account creation timestamp
    """

    def __init__(
        self,
        id: str,
        email: str,
        created_at: Optional[datetime] = None,
    ):
        self.id = id
        self.email = email
        self.created_at = created_at

    def __eq__(self, other: object) -> bool:
        return isinstance(other, User) and other.id == self.id and other.email == self.email

    def __repr__(self) -> str:
        return f"<User id={self.id} email={self.email}>"
