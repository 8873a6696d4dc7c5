import json
import os

import pytest

from config_engine import DEFAULT_SELECTORS, ConfigEngine, SelectorValidator, domain_of


@pytest.fixture
def config_path(tmp_path):
    return str(tmp_path / "sites.json")


def write_json(path, data, mtime):
    with open(path, "w", encoding="utf-8") as f:
        if isinstance(data, str):
            f.write(data)
        else:
            json.dump(data, f)
    os.utime(path, (mtime, mtime))


@pytest.mark.parametrize("url,expected", [
    ("https://chatgpt.com/?oai=1", "chatgpt.com"),
    ("https://www.Example.com:8443/chat", "example.com"),
    ("chat.example.org/path", "chat.example.org"),
])
def test_domain_of(url, expected):
    assert domain_of(url) == expected


def test_missing_file_uses_defaults(config_path):
    engine = ConfigEngine(config_path)

    selectors = engine.get_site_selectors("chatgpt.com")

    assert selectors.input_box == DEFAULT_SELECTORS["input_box"]
    assert selectors.answer == DEFAULT_SELECTORS["answer"]


def test_validator_repairs_and_falls_back():
    validator = SelectorValidator()

    fixed = validator.validate({
        "input_box": "css:textarea#prompt",
        "send_btn": ['css:button:has(svg)[data-testid="send-button"]', "", "css:button:has(svg)[data-testid=\"send-button\"]"],
        "stop_btn": [],
        "unknown_key": ["css:div"],
    })

    assert fixed["input_box"] == ["css:textarea#prompt"]
    assert fixed["send_btn"] == ['css:button[data-testid="send-button"]']
    assert fixed["stop_btn"] == DEFAULT_SELECTORS["stop_btn"]
    assert fixed["answer"] == DEFAULT_SELECTORS["answer"]
    assert "unknown_key" not in fixed


def test_set_selectors_persists_to_disk(config_path):
    engine = ConfigEngine(config_path)

    engine.set_site_selectors("chat.example.com", {"answer": ["css:.reply"]})

    reloaded = ConfigEngine(config_path)
    assert reloaded.get_site_selectors("chat.example.com").answer == ["css:.reply"]
    assert reloaded.get_site_selectors("chat.example.com").input_box == DEFAULT_SELECTORS["input_box"]


def test_external_edit_is_hot_reloaded(config_path):
    write_json(config_path, {"chat.example.com": {"answer": ["css:.old"]}}, mtime=1_000_000)
    engine = ConfigEngine(config_path)
    assert engine.get_site_selectors("chat.example.com").answer == ["css:.old"]

    write_json(config_path, {"chat.example.com": {"answer": ["css:.new"]}}, mtime=1_000_100)

    assert engine.get_site_selectors("chat.example.com").answer == ["css:.new"]


def test_broken_file_keeps_previous_config(config_path):
    write_json(config_path, {"chat.example.com": {"answer": ["css:.old"]}}, mtime=1_000_000)
    engine = ConfigEngine(config_path)

    write_json(config_path, "{not json", mtime=1_000_100)

    assert engine.get_site_selectors("chat.example.com").answer == ["css:.old"]


def test_delete_site_config(config_path):
    engine = ConfigEngine(config_path)
    engine.set_site_selectors("chat.example.com", {"answer": ["css:.reply"]})

    assert engine.delete_site_config("chat.example.com") is True
    assert engine.delete_site_config("chat.example.com") is False
    assert engine.get_site_selectors("chat.example.com").answer == DEFAULT_SELECTORS["answer"]
