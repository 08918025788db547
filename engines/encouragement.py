"""End-of-round encouragement messages chosen by TF accuracy."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Dict, Optional

logger = logging.getLogger(__name__)

HIGH_ACCURACY_PCT = 85
MEDIUM_ACCURACY_PCT = 60

DEFAULT_MESSAGES: Dict[str, str] = {
    "default": "Keep going! Finishing a round is already great.",
    "high": "Rock solid! Re-read the explanations for your three slowest topics and you will get even faster.",
    "medium": "Nice work! Summarise each of your three slowest topics in a single sentence.",
    "low": "No problem, you just found your weak spots. Redo the slowest topic and aim to halve your mistakes.",
}


class EncouragementCatalog:
    """Messages loaded from an optional JSON file, falling back to built-in defaults.

    The file is a JSON object with any of the keys ``high``, ``medium``, ``low``
    and ``default``. Missing or unreadable files never fail a summary.
    """

    def __init__(self, path: Optional[str | Path] = None) -> None:
        self.path = Path(path) if path else None
        self._messages: Optional[Dict[str, str]] = None

    def _load(self) -> Dict[str, str]:
        messages = dict(DEFAULT_MESSAGES)
        if self.path is None or not self.path.exists():
            return messages
        try:
            with self.path.open("r", encoding="utf-8") as fh:
                raw = json.load(fh)
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Failed to load encouragement messages from %s: %s", self.path, exc)
            return messages
        if not isinstance(raw, dict):
            logger.warning("Encouragement file %s must hold a JSON object; using defaults", self.path)
            return messages
        for key, value in raw.items():
            if key in messages and isinstance(value, str) and value.strip():
                messages[key] = value.strip()
        return messages

    @property
    def messages(self) -> Dict[str, str]:
        if self._messages is None:
            self._messages = self._load()
        return self._messages

    def reload(self) -> None:
        self._messages = None

    def message_for(self, accuracy_pct: int, *, has_tf: bool = True) -> str:
        messages = self.messages
        if not has_tf:
            return messages["default"]
        if accuracy_pct >= HIGH_ACCURACY_PCT:
            return messages["high"]
        if accuracy_pct >= MEDIUM_ACCURACY_PCT:
            return messages["medium"]
        return messages["low"]
