import json
import time
from pathlib import Path
from typing import Any, Dict, List

from extensionos.core.config import ExtensionOSConfig
from extensionos.core.extensions.cache import MemoryCache
from extensionos.core.extensions.catalog import MarketplaceClient, TransportResponse
from extensionos.core.extensions.ledger import NOT_INSTALLED
from extensionos.core.extensions.models import ExtensionKind
from extensionos.core.extensions.system import NULL_HASH, SystemUpdater
from extensionos.store.parameters import (
    CORE_BUILD,
    CORE_HASH,
    PROJECT_ID,
    PROJECT_NAME,
    UPDATE_COUNT,
    UPDATE_RETRY,
)


class FakeTransport:
    def __init__(self, *responses: Any):
        self.responses = list(responses)
        self.requests: List[Dict[str, Any]] = []

    def post(self, url, data, headers=None, auth=None, to_file=None):
        self.requests.append({"url": url, "data": data})
        response = self.responses.pop(0)
        if isinstance(response, TransportResponse):
            return response
        return TransportResponse(200, json.dumps(response))


def _updater(tmp_path: Path, transport: FakeTransport, **overrides) -> SystemUpdater:
    config = ExtensionOSConfig(
        base_path=tmp_path,
        update_server="https://gateway.test/api",
        **overrides,
    )
    catalog = MarketplaceClient(config, transport=transport, cache=MemoryCache())
    return SystemUpdater(config, catalog=catalog)


def _write_plugin(root: Path, identifier: str) -> None:
    vendor, name = identifier.lower().split(".")
    directory = root / vendor / name
    (directory / "updates").mkdir(parents=True)
    (directory / "plugin.py").write_text(f'identifier = "{identifier}"\nname = "{name.title()}"\n', encoding="utf-8")
    (directory / "updates" / "version.yaml").write_text("1.0.0: First version\n1.1.0: Second version\n", encoding="utf-8")


def _write_theme(root: Path, code: str) -> None:
    directory = root / code
    directory.mkdir(parents=True)
    (directory / "theme.yaml").write_text(f"code: {code}\nname: {code.title()}\n", encoding="utf-8")


def test_coordinators_share_one_ledger(tmp_path: Path) -> None:
    updater = _updater(tmp_path, FakeTransport())

    plugins = updater.coordinator(ExtensionKind.PLUGIN)
    themes = updater.coordinator("theme")

    assert plugins.ledger is updater.ledger
    assert themes.ledger is updater.ledger
    assert plugins.reader is themes.reader


def test_build_and_hash(tmp_path: Path) -> None:
    updater = _updater(tmp_path, FakeTransport())

    assert updater.get_hash() == NULL_HASH

    updater.set_build("1.2.5")
    assert updater.parameters.get(CORE_BUILD) == "1.2.5"
    assert updater.get_hash() == NULL_HASH

    updater.set_build("1.2.6", hash="abc123")
    assert updater.parameters.get(CORE_HASH) == "abc123"
    assert updater.get_hash() == "abc123"


def test_check_returns_stored_count(tmp_path: Path) -> None:
    transport = FakeTransport()
    updater = _updater(tmp_path, transport)
    updater.parameters.set(UPDATE_COUNT, 3)

    assert updater.check() == 3
    assert transport.requests == []


def test_check_waits_for_retry_period_unless_forced(tmp_path: Path) -> None:
    transport = FakeTransport({"update": 2, "themes": {"fresh": {"name": "Fresh"}}})
    updater = _updater(tmp_path, transport)
    updater.parameters.set(UPDATE_RETRY, time.time() + 3600)

    assert updater.check() == 0
    assert transport.requests == []

    assert updater.check(force=True) == 3
    assert updater.parameters.get(UPDATE_COUNT) == 3
    assert updater.parameters.get(UPDATE_RETRY) > time.time()


def test_check_degrades_gateway_failure_to_zero(tmp_path: Path) -> None:
    transport = FakeTransport(TransportResponse(500, "Gateway is down"))
    updater = _updater(tmp_path, transport)

    assert updater.check() == 0
    assert updater.parameters.get(UPDATE_COUNT) == 0
    assert updater.parameters.get(UPDATE_RETRY) > time.time()


def test_update_list_annotates_plugins_and_core(tmp_path: Path) -> None:
    transport = FakeTransport({
        "update": 2,
        "core": {"build": "1.2.6"},
        "plugins": {"Acme.Blog": {"version": "1.2.0"}},
    })
    updater = _updater(tmp_path, transport)
    _write_plugin(updater.config.plugins_dir, "Acme.Blog")
    updater.coordinator(ExtensionKind.PLUGIN).install("Acme.Blog")
    updater.set_build("1.2.5")

    result = updater.request_update_list()

    assert result["core"] == {"build": "1.2.6", "old_build": "1.2.5"}
    assert result["plugins"]["Acme.Blog"] == {
        "version": "1.2.0",
        "name": "Blog",
        "old_version": "1.1.0",
    }
    assert result["update"] == 2
    assert result["hasUpdates"] is True

    sent = transport.requests[0]
    assert sent["url"] == "https://gateway.test/api/core/update"
    assert "plugins%5BAcme.Blog%5D=1.1.0" in sent["data"]
    assert "build=1.2.5" in sent["data"]


def test_update_list_strips_frozen_installed_and_disabled_entries(tmp_path: Path) -> None:
    transport = FakeTransport({
        "update": 1,
        "core": {"build": "1.2.6"},
        "plugins": {"Acme.Blog": {"version": "1.2.0"}},
        "themes": {"demo": {"name": "Demo"}, "fresh": {"name": "Fresh"}},
    })
    updater = _updater(tmp_path, transport, disable_core_updates=True)
    _write_plugin(updater.config.plugins_dir, "Acme.Blog")
    _write_theme(updater.config.themes_dir, "demo")
    plugins = updater.coordinator(ExtensionKind.PLUGIN)
    plugins.install("Acme.Blog")
    plugins.freeze("Acme.Blog")
    updater.coordinator(ExtensionKind.THEME).install("demo")

    result = updater.request_update_list()

    assert result["plugins"] == {}
    assert "core" not in result
    assert result["themes"] == {"fresh": {"name": "Fresh"}}
    # Discounts stop at zero before the new theme is counted
    assert result["update"] == 1
    assert updater.parameters.get(UPDATE_COUNT) == 1
    assert "themes%5B0%5D=demo" in transport.requests[0]["data"]


def test_set_project_stores_details(tmp_path: Path) -> None:
    transport = FakeTransport({"name": "Shop", "owner": "Acme"})
    updater = _updater(tmp_path, transport)

    details = updater.set_project("42")

    assert details["owner"] == "Acme"
    assert updater.parameters.get(PROJECT_ID) == "42"
    assert updater.parameters.get(PROJECT_NAME) == "Shop"
    assert transport.requests[0]["url"].endswith("/project/detail")
    assert "id=42" in transport.requests[0]["data"]


def test_update_runs_every_kind_and_resets_count(tmp_path: Path) -> None:
    updater = _updater(tmp_path, FakeTransport())
    _write_plugin(updater.config.plugins_dir, "Acme.Blog")
    updater.parameters.set(UPDATE_COUNT, 4)

    reports = updater.update()

    assert list(reports) == [ExtensionKind.MODULE, ExtensionKind.PLUGIN, ExtensionKind.THEME]
    assert reports[ExtensionKind.PLUGIN].ok
    assert updater.ledger.get_version("Acme.Blog") == "1.1.0"
    assert updater.parameters.get(UPDATE_COUNT) == 0
    assert updater.warnings() == []


def test_tear_down_rolls_back_and_drops_storage(tmp_path: Path) -> None:
    updater = _updater(tmp_path, FakeTransport())
    _write_plugin(updater.config.plugins_dir, "Acme.Blog")
    updater.coordinator(ExtensionKind.PLUGIN).install("Acme.Blog")

    updater.tear_down()

    assert updater.ledger.get_version("Acme.Blog") == NOT_INSTALLED
    assert updater.ledger.get_history("Acme.Blog") == []
    assert (updater.config.plugins_dir / "acme" / "blog" / "plugin.py").is_file()
