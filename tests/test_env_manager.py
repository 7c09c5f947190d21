from env_manager import EnvironmentManager


def test_only_locale_and_buildkit_reach_the_engine():
    host = {
        "LANG": "C.UTF-8",
        "LC_ALL": "C.UTF-8",
        "DOCKER_HOST": "tcp://elsewhere:2375",
        "DOCKER_CONFIG": "/tmp/creds",
        "HTTPS_PROXY": "http://proxy:3128",
        "PATH": "/usr/bin",
        "DOCKER_BUILDKIT": "0",
    }
    assert EnvironmentManager(source=host).engine_env() == {
        "LANG": "C.UTF-8",
        "LC_ALL": "C.UTF-8",
        "DOCKER_BUILDKIT": "1",
    }


def test_unset_locale_is_omitted():
    assert EnvironmentManager(source={"HOME": "/root"}).engine_env() == {"DOCKER_BUILDKIT": "1"}
