from __future__ import annotations

import logging
from typing import Optional

logger = logging.getLogger(__name__)


class Session:
    """Who (if anyone) is signed in. Only the authenticated flag and uid matter here."""

    def __init__(self, user_id: Optional[str] = None):
        self.user_id = user_id

    @property
    def is_authenticated(self) -> bool:
        return bool(self.user_id)

    def sign_in(self, user_id: str) -> None:
        logger.info("[session] signed in uid=%s", user_id)
        self.user_id = user_id

    def sign_out(self) -> None:
        if self.user_id:
            logger.info("[session] signed out uid=%s", self.user_id)
        self.user_id = None
