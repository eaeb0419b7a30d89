"""Capability object describing which optional subsystems are usable.

Components receive a ``Capabilities`` instance at construction and read it
instead of probing the environment themselves.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

from .logging_utils import log_info, log_warning

_CHECK_KEY = "capabilities:check"


@dataclass(frozen=True)
class Capabilities:
    storage: bool = True
    embeddings: bool = True
    inference: bool = True

    @classmethod
    async def detect(
        cls,
        storage: Optional[Any] = None,
        embedder: Optional[Any] = None,
        responder: Optional[Any] = None,
    ) -> "Capabilities":
        """Detect capabilities once, at startup.

        Args:
            storage: ``KeyValueStorage`` to exercise with a put/get/delete round
            embedder: ``EmbeddingProvider`` asked to embed a short check text
            responder: Inference responder; its presence enables inference

        Returns:
            A frozen ``Capabilities`` instance
        """

        storage_ok = False
        if storage is not None:
            try:
                await storage.initialize()
                await storage.put(_CHECK_KEY, {"ok": True})
                storage_ok = (await storage.get(_CHECK_KEY)) == {"ok": True}
                await storage.delete(_CHECK_KEY)
            except Exception as exc:
                log_warning(f"[Capabilities] Storage check failed: {exc}")

        embeddings_ok = False
        if embedder is not None:
            try:
                embeddings_ok = bool(await embedder.embed("capability check"))
            except Exception as exc:
                log_warning(f"[Capabilities] Embedding check failed: {exc}")

        capabilities = cls(
            storage=storage_ok,
            embeddings=embeddings_ok,
            inference=responder is not None,
        )
        log_info(f"[Capabilities] {capabilities.describe()}")
        return capabilities

    def describe(self) -> str:
        flags = {
            "storage": self.storage,
            "embeddings": self.embeddings,
            "inference": self.inference,
        }
        return ", ".join(f"{name}={'on' if enabled else 'off'}" for name, enabled in flags.items())


__all__ = ["Capabilities"]
