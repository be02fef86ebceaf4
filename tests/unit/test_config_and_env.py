from __future__ import annotations

from pathlib import Path

import pytest

from cnb_pack import config as config_mod
from cnb_pack.config import Config, RunImageConfig
from cnb_pack.core import app_image_name, parse_env_vars, process_app_dir, process_tag_reference
from cnb_pack.errors import ConfigurationError


def test_missing_config_file_gives_defaults(tmp_path: Path) -> None:
    cfg = config_mod.load(tmp_path / "nope.toml")
    assert cfg.default_builder == "" and cfg.run_images == []


def test_config_save_then_load(tmp_path: Path) -> None:
    path = tmp_path / "pack" / "config.toml"
    cfg = Config(
        default_builder="some/builder",
        run_images=[RunImageConfig(image="default/run", mirrors=["local/mirror"])],
    )
    config_mod.save(cfg, path)
    text = path.read_text(encoding="utf-8")
    assert 'default-builder-image = "some/builder"' in text
    loaded = config_mod.load(path)
    assert loaded == cfg
    assert loaded.local_mirrors("default/run") == ["local/mirror"]
    assert loaded.get_run_image("other/run") is None


def test_default_config_path_honours_pack_home(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("PACK_HOME", str(tmp_path))
    assert config_mod.default_config_path() == tmp_path / "config.toml"


def test_invalid_config_raises(tmp_path: Path) -> None:
    path = tmp_path / "config.toml"
    path.write_text("run-images = 3\n", encoding="utf-8")
    with pytest.raises(ConfigurationError):
        config_mod.load(path)


def test_env_file_and_flags_merge(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("FROM_SHELL", "shell-value")
    env_file = tmp_path / "env"
    env_file.write_text("A=from-file\nB=keep=equals\n\nFROM_SHELL\n", encoding="utf-8")
    env = parse_env_vars(env_file, ["A=from-flag", "C="])
    assert env == {"A": "from-flag", "B": "keep=equals", "FROM_SHELL": "shell-value", "C": ""}


def test_process_app_dir(tmp_path: Path) -> None:
    assert process_app_dir(str(tmp_path)) == tmp_path.resolve()
    with pytest.raises(ConfigurationError, match="does not exist"):
        process_app_dir(str(tmp_path / "missing"))
    f = tmp_path / "file.txt"
    f.write_text("x", encoding="utf-8")
    with pytest.raises(ConfigurationError, match="is not a directory"):
        process_app_dir(str(f))


def test_process_tag_reference_requires_image() -> None:
    with pytest.raises(ConfigurationError, match="image is a required parameter"):
        process_tag_reference("")


def test_app_image_name_is_stable(tmp_path: Path) -> None:
    name = app_image_name(tmp_path)
    assert name == app_image_name(tmp_path)
    assert name.startswith("pack.local/run/") and len(name.rsplit("/", 1)[1]) == 16
