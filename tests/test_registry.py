"""Unit tests for loading the source registry."""

from __future__ import annotations

import json

import pytest

from blocklistdownloadthing import ConfigError, EntryKind, SourceFormat, SourceRegistry


def _write_config(tmp_path, data) -> str:
    path = tmp_path / "blocklists.json"
    path.write_text(json.dumps(data))
    return str(path)


def test_load_reads_sources_with_defaults(tmp_path) -> None:
    """Missing name, format and enabled fall back to url, hosts and true."""
    path = _write_config(tmp_path, {
        "sources": [
            {"url": "https://lists.example/hosts"},
            {"name": "ads", "url": "https://lists.example/ads.txt", "format": "adblock", "enabled": False},
        ],
    })

    registry = SourceRegistry.load(path)

    first, second = registry.sources()
    assert first.identifier == "https://lists.example/hosts"
    assert first.format is SourceFormat.HOSTS
    assert second.format is SourceFormat.ADBLOCK
    assert registry.enabled() == (first,)


def test_local_blocklist_and_allowlist_are_loaded(tmp_path) -> None:
    """Local entries are classified and tagged with the local source."""
    registry = SourceRegistry.from_dict({
        "sources": [{"url": "https://lists.example/hosts"}],
        "allowlist": ["keep.example.com"],
        "blocklist": ["Tracker.Example.com", "198.51.100.0/24"],
    })

    assert registry.allowlist == ("keep.example.com",)
    assert [(e.pattern, e.kind) for e in registry.local_entries] == [
        ("tracker.example.com", EntryKind.DOMAIN),
        ("198.51.100.0/24", EntryKind.CIDR),
    ]
    assert registry.local_entries[0].origin_sources == {"local"}


@pytest.mark.parametrize(
    "data",
    [
        [],
        {"sources": "nope"},
        {"sources": [{"url": "ftp://lists.example/hosts"}]},
        {"sources": [{"url": "not a url"}]},
        {"sources": [{"url": "https://lists.example/a", "format": "xml"}]},
        {"sources": [{"url": "https://lists.example/a", "enabled": "yes"}]},
        {"sources": [{"name": "dup", "url": "https://lists.example/a"},
                     {"name": "dup", "url": "https://lists.example/b"}]},
        {"sources": [{"name": "local", "url": "https://lists.example/a"}]},
        {"sources": [{"url": "https://lists.example/a", "enabled": False}]},
        {"sources": [{"url": "https://lists.example/a"}], "blocklist": ["bad entry"]},
        {"sources": [{"url": "https://lists.example/a"}], "allowlist": "example.com"},
    ],
)
def test_invalid_configuration_fails_fast(data) -> None:
    """Malformed URLs, colliding names and bad values raise ConfigError."""
    with pytest.raises(ConfigError):
        SourceRegistry.from_dict(data)


def test_unreadable_and_unparsable_files(tmp_path) -> None:
    """Missing files and invalid JSON are configuration errors."""
    broken = tmp_path / "broken.json"
    broken.write_text("{not json")

    with pytest.raises(ConfigError):
        SourceRegistry.load(str(tmp_path / "missing.json"))
    with pytest.raises(ConfigError):
        SourceRegistry.load(str(broken))
