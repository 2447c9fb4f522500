from __future__ import annotations

import zipfile
from pathlib import Path

import pytest
from typer.testing import CliRunner

from fakes import LocalRepo
from j_dep_core.cli import app

runner = CliRunner()


@pytest.fixture
def repo_args(local: LocalRepo, tmp_path: Path) -> list[str]:
    local.publish(
        "g:app:1",
        [("g:lib:1", None), ("g:rt:1", "runtime")],
        jar=_jar_bytes(tmp_path / "app.jar", {"app/Api.class": b"api"}),
    )
    local.publish("g:lib:1", jar=_jar_bytes(tmp_path / "lib.jar", {"lib/Lib.class": b"lib"}))
    local.publish("g:rt:1", jar=_jar_bytes(tmp_path / "rt.jar", {"rt/Rt.class": b"rt"}))
    return ["--repo", f"local={local.root.as_uri()}", "--cache-dir", str(tmp_path / "cache")]


def _jar_bytes(path: Path, entries: dict[str, bytes]) -> bytes:
    with zipfile.ZipFile(path, "w") as archive:
        for name, data in entries.items():
            archive.writestr(name, data)
    return path.read_bytes()


def test_resolve_prints_artifacts(repo_args: list[str]) -> None:
    res = runner.invoke(app, ["resolve", "g:app:1", *repo_args])

    assert res.exit_code == 0, res.output
    assert "g:lib:1" in res.output
    assert "g:rt:1" in res.output


def test_resolve_fails_on_unresolved(repo_args: list[str]) -> None:
    res = runner.invoke(app, ["resolve", "g:missing:1", *repo_args])

    assert res.exit_code == 1
    assert "g:missing:1" in res.output


def test_invalid_repository_is_reported(tmp_path: Path) -> None:
    res = runner.invoke(app, ["resolve", "g:a:1", "--repo", "no-url", "--cache-dir", str(tmp_path)])

    assert res.exit_code == 1
    assert "name=url" in res.output


def test_tree(repo_args: list[str]) -> None:
    res = runner.invoke(app, ["tree", "g:app:1", *repo_args])

    assert res.exit_code == 0, res.output
    assert "g:app:1" in res.output
    assert "g:rt:1 (runtime)" in res.output


def test_why(repo_args: list[str]) -> None:
    res = runner.invoke(app, ["why", "g:app:1", "--target", "g:lib:1", *repo_args])

    assert res.exit_code == 0, res.output
    assert "g:app:1 -> g:lib:1" in res.output

    res = runner.invoke(app, ["why", "g:app:1", "--target", "g:other:1", *repo_args])
    assert res.exit_code == 1


def test_assemble(repo_args: list[str], tmp_path: Path) -> None:
    classes = tmp_path / "classes" / "app"
    classes.mkdir(parents=True)
    (classes / "Main.class").write_bytes(b"main")
    out = tmp_path / "dist" / "app.jar"

    res = runner.invoke(
        app, ["assemble", "g:app:1", "--out", str(out), "--own", str(tmp_path / "classes"), "--exec", *repo_args]
    )

    assert res.exit_code == 0, res.output
    assert out.read_bytes().startswith(b"#!/usr/bin/env sh")
    with zipfile.ZipFile(out) as archive:
        names = set(archive.namelist())
    assert {"app/Main.class", "app/Api.class", "lib/Lib.class", "rt/Rt.class"} <= names
