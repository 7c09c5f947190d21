from typing import Iterable, List, Optional


class ImageBuildSystemError(Exception):
    """Base error carrying an optional hint on how to fix the problem"""

    def __init__(self, message: str, hint: Optional[str] = None):
        super().__init__(message)
        self.hint = hint

    def __str__(self) -> str:
        message = super().__str__()
        if self.hint:
            return f"{message}\nHint: {self.hint}"
        return message


class ConfigurationError(ImageBuildSystemError):
    """Invalid or incomplete build configuration. Always fatal."""


class UnresolvedPackageError(ImageBuildSystemError):
    """One or more requested packages have no pin in the loaded lockfile"""

    def __init__(self, packages: Iterable[str], distribution: str = "", architecture: str = ""):
        self.packages: List[str] = sorted(set(packages))
        where = " ".join(p for p in (distribution, architecture) if p)
        super().__init__(
            f"No lockfile pin for package(s) {', '.join(self.packages)}" + (f" ({where})" if where else ""),
            hint="Regenerate the lockfile with the `lockfile` command",
        )


class UnresolvedBaseImageError(ImageBuildSystemError):
    """A FromBuiltImage reference points at a project without a result in this run"""

    def __init__(self, project_id: str):
        self.project_id = project_id
        super().__init__(
            f"No image has been built for project '{project_id}' in this run",
            hint=f"Build '{project_id}' before the projects that use it as a base image",
        )


class ImageBuildError(ImageBuildSystemError):
    """The container engine failed to build the image; carries the engine output verbatim"""

    def __init__(self, message: str, log: str = ""):
        super().__init__(message)
        self.log = log

    def __str__(self) -> str:
        message = super().__str__()
        if self.log:
            return f"{message}\n--- build log ---\n{self.log}"
        return message


class TransientPullError(ImageBuildSystemError):
    """Pulling an image failed. The only error kind that is retried."""

    def __init__(self, reference: str, output: str = "", returncode: Optional[int] = None):
        self.reference = reference
        self.output = output
        self.returncode = returncode
        detail = f" (exit code {returncode})" if returncode is not None else ""
        super().__init__(f"Error pulling {reference} through the container engine{detail}")


class DuplicateRegistrationError(RuntimeError):
    """A project registered a build result twice in one run (programming error)"""

    def __init__(self, project_id: str):
        self.project_id = project_id
        super().__init__(f"Project '{project_id}' already registered a build result in this run")
