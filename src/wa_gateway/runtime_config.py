"""Administrator-adjustable runtime configuration persisted as a small JSON file."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from wa_gateway.logging_abstraction import get_logger

__all__ = ["RuntimeConfig", "RuntimeConfigStore"]

logger = get_logger(__name__)


class RuntimeConfig(BaseModel):
    """On-disk shape: ``{"PAIR_PHONE": ..., "EXTERNAL_ENDPOINT": ...}``."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    pair_phone: str | None = Field(default=None, alias="PAIR_PHONE")
    external_endpoint: str | None = Field(default=None, alias="EXTERNAL_ENDPOINT")


class RuntimeConfigStore:
    """Loads the runtime config once and rewrites the whole file on every update.

    Values set here win over the environment defaults passed in.
    """

    lp = "RuntimeConfigStore:"

    def __init__(
        self,
        path: str | Path,
        default_pair_phone: str | None = None,
        default_external_endpoint: str | None = None,
    ) -> None:
        self.path = Path(path)
        self.default_pair_phone = default_pair_phone
        self.default_external_endpoint = default_external_endpoint
        self.config = self._load()

    def _load(self) -> RuntimeConfig:
        lp = f"{self.lp}load:"
        if not self.path.exists():
            logger.debug("%s %s not found, using defaults", lp, self.path)
            return RuntimeConfig()
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
            return RuntimeConfig.model_validate(raw)
        except (OSError, ValueError, ValidationError) as e:
            logger.error("%s failed to load runtime config %s: %s", lp, self.path, e)
            return RuntimeConfig()

    def _save(self) -> None:
        lp = f"{self.lp}save:"
        self.path.parent.mkdir(parents=True, exist_ok=True)
        data = self.config.model_dump(by_alias=True, exclude_none=True)
        _ = self.path.write_text(json.dumps(data, indent=2), encoding="utf-8")
        logger.info("%s runtime config saved", lp, extra={"path": str(self.path), "keys": sorted(data)})

    def update(self, pair_phone: str | None = None, external_endpoint: str | None = None) -> RuntimeConfig:
        """Merge the given values into the config and persist it.

        An empty string clears a value; ``None`` leaves it untouched.
        """
        changes: dict[str, Any] = {}
        if pair_phone is not None:
            changes["pair_phone"] = pair_phone.strip() or None
        if external_endpoint is not None:
            changes["external_endpoint"] = external_endpoint.strip() or None
        self.config = self.config.model_copy(update=changes)
        self._save()
        return self.config

    def as_dict(self) -> dict[str, Any]:
        return self.config.model_dump(by_alias=True)

    def get_pair_phone(self) -> str | None:
        return self.config.pair_phone or self.default_pair_phone

    def get_external_endpoint(self) -> str | None:
        return self.config.external_endpoint or self.default_external_endpoint
