# SPDX-License-Identifier: HRUL-1.0
# Copyright (c) 2026 Gabriel Galán Pelayo
"""
Local registry of models and resolution of model ids to weights on disk.

The registry is a JSON list of manifests in ~/.tokenpipe/models.json. A model
id is looked up as a registered name, then as an alias, then as a path.
"""

import json
import logging
import os
import threading
from datetime import datetime
from pathlib import Path

from tokenpipe.backends.base import ModelSource
from tokenpipe.config import config
from tokenpipe.exceptions import ModelNotFoundError
from tokenpipe.models.formats import ModelFormat, detect_format
from tokenpipe.models.manifest import ModelManifest

logger = logging.getLogger(__name__)


class ModelRegistry:
    """Manages the local model inventory."""

    def __init__(self, path: Path | None = None):
        self.path = path or config.registry_path
        self._lock = threading.Lock()
        self._models: dict[str, ModelManifest] = self._read()

    def _read(self) -> dict[str, ModelManifest]:
        try:
            entries = json.loads(self.path.read_text())
        except FileNotFoundError:
            return {}
        except json.JSONDecodeError as e:
            logger.warning("Ignoring unreadable registry %s: %s", self.path, e)
            return {}

        models = {}
        for entry in entries:
            manifest = ModelManifest.from_dict(entry)
            try:
                ModelFormat(manifest.format)
            except ValueError:
                logger.warning("Skipping %s: unknown format %r", manifest.name, manifest.format)
                continue
            models[manifest.name] = manifest
        return models

    def _write(self):
        # Write then rename so a crash never leaves a truncated registry
        tmp = self.path.with_suffix(".tmp")
        tmp.write_text(json.dumps([m.to_dict() for m in self._models.values()], indent=2))
        os.replace(tmp, self.path)

    def add(self, manifest: ModelManifest):
        """Registers a model, replacing any entry with the same name."""
        with self._lock:
            self._models[manifest.name] = manifest
            self._write()

    def get(self, name: str) -> ModelManifest | None:
        """Finds a model by name or alias."""
        with self._lock:
            if name in self._models:
                return self._models[name]
            return next((m for m in self._models.values() if m.alias == name), None)

    def set_alias(self, name: str, alias: str) -> bool:
        """Sets an alias for an existing model. An alias never shadows a name or another alias."""
        with self._lock:
            taken = alias in self._models or any(m.alias == alias for m in self._models.values())
            if taken or name not in self._models:
                return False
            self._models[name].alias = alias
            self._write()
            return True

    def touch(self, name: str):
        """Records that a model was just used."""
        with self._lock:
            if name in self._models:
                self._models[name].last_used = datetime.now().isoformat()
                self._write()

    def list_all(self) -> list[ModelManifest]:
        """Lists all registered models, newest first."""
        with self._lock:
            return sorted(self._models.values(), key=lambda m: m.created_at, reverse=True)

    def remove(self, name: str) -> bool:
        """Removes a model from the registry (does not delete files)."""
        with self._lock:
            if self._models.pop(name, None) is None:
                return False
            self._write()
            return True


def resolve_model_source(model_id: str, registry: ModelRegistry | None = None) -> ModelSource:
    """
    Resolves a model identifier to its weights.

    Lookup order: registry name, registry alias, local path.

    Raises:
        ModelNotFoundError: nothing matches the identifier
    """
    registry = registry or ModelRegistry()
    manifest = registry.get(model_id)
    if manifest is not None:
        path = Path(manifest.local_path)
        if not path.exists():
            logger.warning("Registered model %s points to a missing path: %s", manifest.name, path)
            raise ModelNotFoundError(model_id)
        registry.touch(manifest.name)
        return ModelSource(
            model_id=model_id,
            path=path,
            format=ModelFormat(manifest.format),
            context_length=manifest.context_length,
        )

    path = Path(model_id).expanduser()
    if path.exists():
        return ModelSource(
            model_id=model_id,
            path=path,
            format=detect_format(path),
            context_length=config.default_ctx_size,
        )
    raise ModelNotFoundError(model_id)
