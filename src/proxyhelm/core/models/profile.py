"""Profile model consumed by the orchestrator."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from uuid import uuid4

from proxyhelm.core.models.errors import ProxyError
from proxyhelm.core.models.status import EngineType


@dataclass
class Profile:
    """A user profile: a name, a core configuration and an engine preference."""

    name: str
    configuration: str
    preferred_engine: EngineType | None = None
    id: str = field(default_factory=lambda: str(uuid4()))

    def parsed(self) -> dict[str, Any]:
        """Parse the configuration JSON.

        Raises:
            ProxyError: config_invalid if the text is not a JSON object
        """
        try:
            data = json.loads(self.configuration)
        except json.JSONDecodeError as e:
            raise ProxyError.config_invalid(f"Malformed JSON: {e}") from e
        if not isinstance(data, dict):
            raise ProxyError.config_invalid("Configuration must be a JSON object")
        return data

    @classmethod
    def from_file(cls, path: Path | str, preferred_engine: EngineType | None = None) -> Profile:
        """Load a profile from a core configuration file.

        A file holding ``{"name": ..., "preferred_engine": ..., "config": {...}}``
        is read as a wrapped profile; anything else is taken as the bare core
        configuration named after the file.
        """
        path = Path(path)
        if not path.exists():
            raise ProxyError.config_not_found()

        try:
            text = path.read_text(encoding="utf-8")
        except UnicodeDecodeError as e:
            raise ProxyError.config_invalid(f"Not UTF-8 text: {e}") from e
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise ProxyError.config_invalid(f"Malformed JSON: {e}") from e

        if isinstance(data, dict) and isinstance(data.get("config"), dict):
            engine = data.get("preferred_engine")
            if preferred_engine is None and engine:
                try:
                    preferred_engine = EngineType.from_string(str(engine))
                except ValueError as e:
                    raise ProxyError.config_invalid(str(e)) from e
            return cls(
                name=data.get("name") or path.stem,
                configuration=json.dumps(data["config"]),
                preferred_engine=preferred_engine,
                id=data.get("id") or path.stem,
            )

        return cls(
            name=path.stem,
            configuration=text,
            preferred_engine=preferred_engine,
            id=path.stem,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "name": self.name,
            "preferred_engine": self.preferred_engine.value if self.preferred_engine else None,
        }
