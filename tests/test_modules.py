import asyncio
import json

import httpx
import pytest

from auditable import atra as atra_package
from auditable.runtime import Notebook
from auditable.runtime.modules import ModuleCache

MODULE_SOURCE = "SCALE = 3\n\ndef triple(x):\n    return x * SCALE\n"
BLOB = bytes(range(8))


def make_client(calls):
    def handler(request):
        calls.append(str(request.url))
        if request.url.path == "/helpers.py":
            return httpx.Response(200, text=MODULE_SOURCE)
        if request.url.path == "/blob.bin":
            return httpx.Response(200, content=BLOB)
        return httpx.Response(404)

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def test_load_bundled_and_python_modules():
    cache = ModuleCache()
    assert cache.load("@atra") is atra_package
    assert hasattr(cache.load("@std"), "median")
    assert cache.load("json") is json
    with pytest.raises(ValueError):
        cache.load("")
    with pytest.raises(ModuleNotFoundError):
        cache.load("no_such_module_anywhere")


def test_install_fetches_once_and_executes_source():
    calls = []

    async def scenario():
        async with make_client(calls) as client:
            cache = ModuleCache(client)
            first = await cache.install("https://cdn.test/helpers.py")
            second = await cache.install("https://cdn.test/helpers.py")
            blob = await cache.install_binary("https://cdn.test/blob.bin")
            again = await cache.install_binary("https://cdn.test/blob.bin")
            return cache, first, second, blob, again

    cache, first, second, blob, again = asyncio.run(scenario())
    assert first is second
    assert first.__name__ == "helpers"
    assert first.triple(2) == 6
    assert blob == again == BLOB
    assert calls == ["https://cdn.test/helpers.py", "https://cdn.test/blob.bin"]
    assert cache.load("https://cdn.test/helpers.py") is first


def test_install_propagates_http_errors():
    async def scenario():
        async with make_client([]) as client:
            await ModuleCache(client).install("https://cdn.test/absent.py")

    with pytest.raises(httpx.HTTPStatusError):
        asyncio.run(scenario())


def test_export_and_restore_work_offline():
    calls = []

    async def fetch():
        async with make_client(calls) as client:
            cache = ModuleCache(client)
            await cache.install("https://cdn.test/helpers.py")
            await cache.install_binary("https://cdn.test/blob.bin")
            return cache.export()

    snapshot = asyncio.run(fetch())
    assert snapshot["sources"] == {"https://cdn.test/helpers.py": MODULE_SOURCE}
    assert isinstance(snapshot["binaries"]["https://cdn.test/blob.bin"], str)

    offline = ModuleCache()
    offline.restore(json.loads(json.dumps(snapshot)))

    async def reuse():
        module = await offline.install("https://cdn.test/helpers.py")
        data = await offline.install_binary("https://cdn.test/blob.bin")
        return module, data

    module, data = asyncio.run(reuse())
    assert module.triple(5) == 15
    assert data == BLOB

    offline.clear()
    assert offline.export() == {"sources": {}, "binaries": {}}


def test_cells_can_install_modules():
    calls = []

    async def scenario():
        async with make_client(calls) as client:
            nb = Notebook(
                [
                    "const helpers = await install('https://cdn.test/helpers.py')",
                    "const tripled = helpers.triple(4)",
                ],
                client=client,
            )
            return await nb.run_all()

    scope = asyncio.run(scenario())
    assert scope["tripled"] == 12
