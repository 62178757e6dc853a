"""Tests for maki.config: TOML loading, merging, validation and CLI defaults."""

import tomllib

import pytest

from maki.cli import build_parser
from maki.config import (
    API_KEY_ENV,
    DEFAULT_MODELS,
    apply_config_to_args,
    generate_config,
    global_config_dir,
    load_config,
    resolve_api_key,
)
from maki.errors import ConfigError, ErrorKind


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _write_toml(path, content):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")


@pytest.fixture
def xdg(tmp_path, monkeypatch):
    """Point the global config directory into tmp_path."""
    home = tmp_path / "xdg"
    monkeypatch.setenv("XDG_CONFIG_HOME", str(home))
    return home / "maki"


@pytest.fixture
def project(tmp_path):
    path = tmp_path / "project"
    path.mkdir()
    return path


def _args(*argv):
    return build_parser().parse_args(list(argv))


# ---------------------------------------------------------------------------
# load_config
# ---------------------------------------------------------------------------


class TestLoadConfig:
    def test_no_files(self, xdg, project):
        assert load_config(project) == {"config_dir": xdg}

    def test_global_only(self, xdg, project):
        _write_toml(xdg / "config.toml", 'model = "openai/gpt-4.1"\nmax_iterations = 8\n')
        config = load_config(project)
        assert config["model"] == "openai/gpt-4.1"
        assert config["max_iterations"] == 8

    def test_project_overrides_global(self, xdg, project):
        _write_toml(xdg / "config.toml", 'model = "a/global"\ntimeout = 30\n')
        _write_toml(project / "maki.toml", 'model = "b/project"\n')
        config = load_config(project)
        assert config["model"] == "b/project"
        assert config["timeout"] == 30

    def test_relative_paths_resolve_against_config_file(self, xdg, project):
        _write_toml(project / "maki.toml", 'workspace = "files"\ndatabase = "data/threads.db"\n')
        config = load_config(project)
        assert config["workspace"] == str(project.resolve() / "files")
        assert config["database"] == str(project.resolve() / "data" / "threads.db")

    def test_invalid_toml(self, xdg, project):
        _write_toml(project / "maki.toml", "model = \n")
        with pytest.raises(ConfigError, match="invalid TOML") as exc_info:
            load_config(project)
        assert exc_info.value.kind is ErrorKind.CONFIGURATION

    def test_wrong_type(self, xdg, project):
        _write_toml(project / "maki.toml", 'max_iterations = "many"\n')
        with pytest.raises(ConfigError, match="expected int, got str"):
            load_config(project)

    def test_bool_is_not_int(self, xdg, project):
        _write_toml(project / "maki.toml", "max_history = true\n")
        with pytest.raises(ConfigError, match="got bool"):
            load_config(project)

    def test_non_positive_iterations(self, xdg, project):
        _write_toml(project / "maki.toml", "max_iterations = 0\n")
        with pytest.raises(ConfigError, match="at least 1"):
            load_config(project)

    def test_empty_models(self, xdg, project):
        _write_toml(project / "maki.toml", "models = []\n")
        with pytest.raises(ConfigError, match="must not be empty"):
            load_config(project)

    def test_models_must_be_strings(self, xdg, project):
        _write_toml(project / "maki.toml", 'models = ["a/b", 3]\n')
        with pytest.raises(ConfigError, match=r"models\[1\]"):
            load_config(project)

    def test_unknown_key_warns(self, xdg, project, capsys):
        _write_toml(project / "maki.toml", 'flavor = "mint"\n')
        config = load_config(project)
        assert "flavor" not in config
        assert "unknown config key 'flavor'" in capsys.readouterr().err

    def test_api_key_in_git_project_warns(self, xdg, project, capsys):
        (project / ".git").mkdir()
        _write_toml(project / "maki.toml", 'api_key = "sk-or-test"\n')
        load_config(project)
        assert "git-tracked" in capsys.readouterr().err


def test_global_config_dir_without_xdg(monkeypatch, tmp_path):
    monkeypatch.delenv("XDG_CONFIG_HOME", raising=False)
    monkeypatch.setenv("HOME", str(tmp_path))
    assert global_config_dir() == tmp_path / ".config" / "maki"


# ---------------------------------------------------------------------------
# apply_config_to_args
# ---------------------------------------------------------------------------


class TestApplyConfig:
    def test_defaults(self, tmp_path):
        args = _args()
        apply_config_to_args(args, {"config_dir": tmp_path})
        assert args.workspace == "file_assistant_workspace"
        assert args.max_iterations == 15
        assert args.max_history == 100
        assert args.timeout == 60
        assert args.temperature == 0.1
        assert args.database == str(tmp_path / "maki.db")
        assert args.log_file == str(tmp_path / "maki.log")
        assert args.models == DEFAULT_MODELS
        assert args.model == DEFAULT_MODELS[0]
        assert args.color is False and args.no_color is False

    def test_cli_beats_config(self, tmp_path):
        args = _args("--max-iterations", "3", "--workspace", "cli_ws")
        apply_config_to_args(
            args, {"config_dir": tmp_path, "max_iterations": 9, "workspace": "cfg_ws", "timeout": 5}
        )
        assert args.max_iterations == 3
        assert args.workspace == "cli_ws"
        assert args.timeout == 5

    def test_unlisted_model_is_prepended(self, tmp_path):
        args = _args("--model", "x/custom")
        apply_config_to_args(args, {"config_dir": tmp_path, "models": ["a/one", "b/two"]})
        assert args.models == ["x/custom", "a/one", "b/two"]
        assert args.model == "x/custom"

    def test_config_models_used(self, tmp_path):
        args = _args()
        apply_config_to_args(args, {"config_dir": tmp_path, "models": ["a/one", "b/two"]})
        assert args.models == ["a/one", "b/two"]
        assert args.model == "a/one"

    def test_color_from_config(self, tmp_path):
        args = _args()
        apply_config_to_args(args, {"config_dir": tmp_path, "color": False})
        assert args.no_color is True

    def test_cli_color_flag_wins(self, tmp_path):
        args = _args("--color")
        apply_config_to_args(args, {"config_dir": tmp_path, "color": False})
        assert args.color is True
        assert args.no_color is False


# ---------------------------------------------------------------------------
# API key and template
# ---------------------------------------------------------------------------


class TestApiKey:
    def test_cli_first(self, monkeypatch):
        monkeypatch.setenv(API_KEY_ENV, "env-key")
        assert resolve_api_key("cli-key", {"api_key": "cfg-key"}) == "cli-key"

    def test_config_then_env(self, monkeypatch):
        monkeypatch.setenv(API_KEY_ENV, "env-key")
        assert resolve_api_key(None, {"api_key": "cfg-key"}) == "cfg-key"
        assert resolve_api_key(None, {}) == "env-key"

    def test_missing(self, monkeypatch):
        monkeypatch.delenv(API_KEY_ENV, raising=False)
        with pytest.raises(ConfigError, match=API_KEY_ENV):
            resolve_api_key(None, {})


def test_generated_template_is_valid_toml_when_uncommented():
    template = generate_config(project=True)
    assert "./maki.toml" in template
    uncommented = "\n".join(
        line[2:].split("  #")[0]
        for line in template.splitlines()
        if line.startswith("# ") and "=" in line
    )
    parsed = tomllib.loads(uncommented)
    assert parsed["max_iterations"] == 15
    assert parsed["models"] == DEFAULT_MODELS
