import threading

import pytest

from composition import BuildRunContext, CompositionResolver
from config import BuilderKind, ImageBuildResult, utcnow
from errors import DuplicateRegistrationError, UnresolvedBaseImageError


def result(tag, image_id="sha256:1"):
    return ImageBuildResult(tag, image_id, BuilderKind.DAEMON, utcnow())


def test_register_then_resolve():
    resolver = CompositionResolver()
    assert resolver.resolve("base") is None
    assert "base" not in resolver
    resolver.register("base", result("base:1"))
    assert resolver.resolve("base").tag == "base:1"
    assert "base" in resolver


def test_registration_is_write_once():
    resolver = CompositionResolver()
    resolver.register("base", result("base:1"))
    with pytest.raises(DuplicateRegistrationError):
        resolver.register("base", result("base:2"))
    assert resolver.require("base").tag == "base:1"


def test_require_names_the_missing_project():
    with pytest.raises(UnresolvedBaseImageError) as excinfo:
        CompositionResolver().require("base")
    assert excinfo.value.project_id == "base"


def test_concurrent_registrations_are_all_kept():
    resolver = CompositionResolver()
    threads = [
        threading.Thread(target=resolver.register, args=(f"p{i}", result(f"p{i}:1", f"sha256:{i}")))
        for i in range(32)
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    snapshot = resolver.snapshot()
    assert len(snapshot) == 32
    assert snapshot["p7"].image_id == "sha256:7"


def test_engine_check_runs_once_per_run():
    calls = []
    context = BuildRunContext()
    for _ in range(3):
        context.run_once_engine_check(lambda: calls.append(1))
    assert calls == [1]
    BuildRunContext().run_once_engine_check(lambda: calls.append(2))
    assert calls == [1, 2]


def test_failed_engine_check_is_retried_by_the_next_build():
    context = BuildRunContext()

    def failing():
        raise RuntimeError("daemon down")

    with pytest.raises(RuntimeError):
        context.run_once_engine_check(failing)
    calls = []
    context.run_once_engine_check(lambda: calls.append(1))
    assert calls == [1]


def test_result_serialisation():
    original = ImageBuildResult("base:1", "sha256:abc", BuilderKind.DIRECT, utcnow(), archive="/tmp/base.tar")
    assert ImageBuildResult.from_dict(original.to_dict()) == original
