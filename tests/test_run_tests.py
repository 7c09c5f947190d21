import subprocess

import pytest

import run_tests


@pytest.fixture(autouse=True)
def stay_in_place(monkeypatch):
    monkeypatch.setattr(run_tests.os, "chdir", lambda path: None)


def test_docker_cases_are_directories_with_a_test_module():
    names = [case.name for case in run_tests.docker_cases()]
    assert "multi_project_test" in names
    assert "__pycache__" not in names


def test_unreachable_daemon_skips_docker_cases(monkeypatch):
    monkeypatch.setattr(run_tests, "run_unit_tests", lambda: True)
    monkeypatch.setattr(run_tests, "docker_available", lambda: False)
    ran = []
    monkeypatch.setattr(run_tests, "run_docker_case", ran.append)
    assert run_tests.main([]) == 0
    assert ran == []


def test_failed_unit_suite_stops_the_run(monkeypatch):
    monkeypatch.setattr(run_tests, "run_unit_tests", lambda: False)
    monkeypatch.setattr(run_tests, "docker_available", lambda: True)
    assert run_tests.main(["--unit-only"]) == 1


def test_failed_docker_case_fails_the_run(monkeypatch, tmp_path):
    case = tmp_path / "broken_case"
    case.mkdir()
    (case / "test.py").write_text("def main():\n    return False\n")
    monkeypatch.setattr(run_tests, "run_unit_tests", lambda: True)
    monkeypatch.setattr(run_tests, "docker_available", lambda: True)
    monkeypatch.setattr(run_tests, "docker_cases", lambda: [case])
    assert run_tests.main([]) == 1


def test_hung_daemon_counts_as_unavailable(monkeypatch):
    def hang(*args, **kwargs):
        raise subprocess.TimeoutExpired("docker info", 10)
    monkeypatch.setattr(run_tests.shutil, "which", lambda name: "/usr/bin/docker")
    monkeypatch.setattr(run_tests.subprocess, "run", hang)
    assert run_tests.docker_available() is False
