import os
from typing import Dict, Mapping, Optional


class EnvironmentManager:
    """Builds the minimal environment every engine subprocess runs with.

    Host variables such as DOCKER_HOST or proxy settings would make a build depend on the
    machine it runs on, so only the locale survives and BuildKit is always enabled. Registry
    credentials are passed explicitly with `--config` instead.
    """

    LOCALE_VARS = ('LANG', 'LC_ALL')

    FORCED_VARS = {'DOCKER_BUILDKIT': '1'}

    def __init__(self, source: Optional[Mapping[str, str]] = None):
        self.source = source

    def engine_env(self) -> Dict[str, str]:
        """LANG and LC_ALL when set on the host, plus DOCKER_BUILDKIT=1"""
        host = os.environ if self.source is None else self.source
        env = {k: host[k] for k in self.LOCALE_VARS if k in host}
        env.update(self.FORCED_VARS)
        return env
