"""Runtime module loading: ``load``, ``install`` and ``install_binary``.

Every notebook owns a :class:`ModuleCache`.  ``install``-ed sources and
binaries are memoised by URL and can be exported with the notebook so a
saved document keeps working offline.
"""
from __future__ import annotations

import base64
import importlib
import logging
import types
from typing import Any

import httpx

from .. import atra as atra_package
from .stdlib import make_std

logger = logging.getLogger(__name__)

BUILTIN_MODULES = {
    "@std": make_std,
    "@atra": lambda: atra_package,
}


class ModuleCache:
    """Per-notebook store of installed module sources and binary assets."""

    def __init__(self, client: httpx.AsyncClient | None = None):
        self.client = client
        self.sources: dict[str, str] = {}
        self.binaries: dict[str, bytes] = {}
        self.modules: dict[str, types.ModuleType] = {}

    async def _get(self, url: str) -> httpx.Response:
        if self.client is not None:
            response = await self.client.get(url)
        else:
            async with httpx.AsyncClient(follow_redirects=True) as client:
                response = await client.get(url)
        response.raise_for_status()
        return response

    def load(self, spec: str) -> Any:
        """Return a bundled namespace (``@std``, ``@atra``) or import a Python module."""

        if not isinstance(spec, str) or not spec:
            raise ValueError("load() expects a module name")
        factory = BUILTIN_MODULES.get(spec)
        if factory is not None:
            return factory()
        if spec in self.modules:
            return self.modules[spec]
        return importlib.import_module(spec)

    async def install(self, url: str) -> types.ModuleType:
        """Fetch Python source from *url* (once) and execute it into a module."""

        module = self.modules.get(url)
        if module is not None:
            return module
        source = self.sources.get(url)
        if source is None:
            logger.debug("installing %s", url)
            source = (await self._get(url)).text
            self.sources[url] = source
        module = self._materialize(url, source)
        self.modules[url] = module
        return module

    async def install_binary(self, url: str) -> bytes:
        """Fetch a binary asset from *url* (once)."""

        data = self.binaries.get(url)
        if data is None:
            logger.debug("installing binary %s", url)
            data = (await self._get(url)).content
            self.binaries[url] = data
        return data

    @staticmethod
    def _materialize(url: str, source: str) -> types.ModuleType:
        name = url.rsplit("/", 1)[-1].split("?", 1)[0].removesuffix(".py") or "installed"
        module = types.ModuleType(name)
        module.__file__ = url
        exec(compile(source, url, "exec"), module.__dict__)
        return module

    def export(self) -> dict:
        """Serialisable snapshot of installed sources and binaries."""

        return {
            "sources": dict(self.sources),
            "binaries": {url: base64.b64encode(data).decode("ascii") for url, data in self.binaries.items()},
        }

    def restore(self, data: dict) -> None:
        self.sources.update(data.get("sources", {}))
        self.binaries.update(
            {url: base64.b64decode(blob) for url, blob in data.get("binaries", {}).items()}
        )
        self.modules.clear()

    def clear(self) -> None:
        self.sources.clear()
        self.binaries.clear()
        self.modules.clear()


__all__ = ["ModuleCache", "BUILTIN_MODULES"]
