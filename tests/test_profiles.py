"""Tests for the persisted model-profile file."""

from __future__ import annotations

import json

import pytest
from pydantic import ValidationError

from switchyard.core.profiles import ModelProfile, ProfileDocument, ProfileStore, parse_document
from switchyard.utils import json_io


def _profile(nickname: str = "4bdev", **overrides) -> ModelProfile:
    data = {
        "nickname": nickname,
        "display_name": "Local 4B Development",
        "canonical_model_id": "qwen3-4b",
        "provider_name": "lmstudio",
    }
    data.update(overrides)
    return ModelProfile(**data)


def test_save_and_load(tmp_path) -> None:
    store = ProfileStore(tmp_path / "model-profiles.json")
    store.save(ProfileDocument(models=[_profile(), _profile("cloud", provider_name="openrouter")], current="cloud"))

    on_disk = json.loads(store.path.read_text())
    assert on_disk["current"] == "cloud"
    assert on_disk["models"][0]["canonicalModelId"] == "qwen3-4b"
    assert "endpointOverride" not in on_disk["models"][0]

    document = store.load()
    assert [p.nickname for p in document.models] == ["4bdev", "cloud"]
    assert document.current_profile() is not None
    assert document.current_profile().provider_name == "openrouter"


def test_missing_file_is_empty(tmp_path) -> None:
    document = ProfileStore(tmp_path / "absent.json").load()
    assert document.models == []
    assert document.current is None


def test_corrupt_file_falls_back_to_no_profiles(tmp_path) -> None:
    path = tmp_path / "model-profiles.json"
    path.write_text('{"models": [{"nickname": "a", "display')
    document = ProfileStore(path).load()
    assert document.models == []


def test_failed_write_leaves_previous_file_intact(tmp_path, monkeypatch) -> None:
    store = ProfileStore(tmp_path / "model-profiles.json")
    store.save(ProfileDocument(models=[_profile()], current="4bdev"))
    before = store.path.read_text()

    def crash(src, dst):
        raise OSError("disk full")

    monkeypatch.setattr(json_io.os, "replace", crash)
    with pytest.raises(OSError):
        store.save(ProfileDocument(models=[], current=None))

    assert store.path.read_text() == before
    assert [p.name for p in tmp_path.iterdir() if p.suffix == ".tmp"] == []
    assert store.load().current == "4bdev"


def test_stray_temp_file_is_ignored(tmp_path) -> None:
    store = ProfileStore(tmp_path / "model-profiles.json")
    store.save(ProfileDocument(models=[_profile()], current="4bdev"))
    (tmp_path / ".model-profiles_abc.tmp").write_text('{"models": [')
    assert store.load().current == "4bdev"


def test_unknown_fields_and_legacy_names_are_tolerated() -> None:
    document = parse_document(
        {
            "models": [
                {
                    "nickname": "30big",
                    "displayName": "Local 30B Complex",
                    "model": "qwen3-30b",
                    "provider": "lmstudio",
                    "baseUrl": "http://localhost:1234/v1",
                    "lastUsed": "2025-01-02T03:04:05Z",
                    "futureField": {"x": 1},
                }
            ],
            "current": "30big",
            "version": 3,
        }
    )
    profile = document.find("30big")
    assert profile is not None
    assert profile.canonical_model_id == "qwen3-30b"
    assert profile.endpoint_override == "http://localhost:1234/v1"
    assert profile.last_used_timestamp is not None and profile.last_used_timestamp.year == 2025
    assert document.current == "30big"


def test_invalid_and_duplicate_entries_are_skipped() -> None:
    document = parse_document(
        {
            "models": [
                {"nickname": "waytoolongname", "displayName": "x", "canonicalModelId": "m", "providerName": "p"},
                {"nickname": "ok", "displayName": "x", "canonicalModelId": "m", "providerName": "p"},
                {"nickname": "ok", "displayName": "y", "canonicalModelId": "m2", "providerName": "p"},
                "not an object",
            ],
            "current": "gone",
        }
    )
    assert [p.nickname for p in document.models] == ["ok"]
    assert document.models[0].display_name == "x"
    assert document.current is None


def test_nickname_rules() -> None:
    assert _profile("a-b_9").nickname == "a-b_9"
    for bad in ("", "has space", "123456789", "é"):
        with pytest.raises(ValidationError):
            _profile(bad)


def test_locked_yields_current_document(tmp_path) -> None:
    store = ProfileStore(tmp_path / "model-profiles.json")
    store.save(ProfileDocument(models=[_profile()]))
    with store.locked() as document:
        document.current = "4bdev"
        store.save(document)
    assert store.load().current == "4bdev"
