"""
Run-scoped registry of build results, used to chain one project's image into another.

Nothing here is persisted: every run resolves multi-project base images fresh.
"""

import threading
from typing import Dict, Optional

from config import ImageBuildResult
from errors import DuplicateRegistrationError, UnresolvedBaseImageError


class CompositionResolver:
    """Write-once-per-project map, safe to share between build threads"""

    def __init__(self):
        self._results: Dict[str, ImageBuildResult] = {}
        self._lock = threading.Lock()

    def register(self, project_id: str, result: ImageBuildResult):
        with self._lock:
            if project_id in self._results:
                raise DuplicateRegistrationError(project_id)
            self._results[project_id] = result

    def resolve(self, project_id: str) -> Optional[ImageBuildResult]:
        with self._lock:
            return self._results.get(project_id)

    def require(self, project_id: str) -> ImageBuildResult:
        result = self.resolve(project_id)
        if result is None:
            raise UnresolvedBaseImageError(project_id)
        return result

    def __contains__(self, project_id: str) -> bool:
        return self.resolve(project_id) is not None

    def snapshot(self) -> Dict[str, ImageBuildResult]:
        with self._lock:
            return dict(self._results)


class BuildRunContext:
    """State of one orchestration invocation, passed explicitly into every build call"""

    def __init__(self, resolver: Optional[CompositionResolver] = None):
        self.resolver = resolver or CompositionResolver()
        self._engine_checked = False
        self._lock = threading.Lock()

    def run_once_engine_check(self, check) -> None:
        """Run the engine precondition the first time any build of this run asks for it"""
        with self._lock:
            if self._engine_checked:
                return
            check()
            self._engine_checked = True
