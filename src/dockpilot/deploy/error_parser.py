"""Classification of raw build and deploy output.

Patterns match the output of Docker and common build tools, never the
shape of the project being deployed. The first matching pattern wins; the
order of ``ERROR_PATTERNS`` is significant.
"""

from __future__ import annotations

import re
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class ErrorCategory(str, Enum):
    """Categories of deployment errors derived from tool output."""

    BUILD_FAILED = "build_failed"
    COMPOSE_INVALID = "compose_invalid"
    DOCKERFILE_INVALID = "dockerfile_invalid"
    DEPENDENCY_MISSING = "dependency_missing"
    DEPENDENCY_CONFLICT = "dependency_conflict"
    PORT_CONFLICT = "port_conflict"
    IMAGE_NOT_FOUND = "image_not_found"
    IMAGE_PULL_FAILED = "image_pull_failed"
    MEMORY_EXCEEDED = "memory_exceeded"
    DISK_FULL = "disk_full"
    TIMEOUT = "timeout"
    PERMISSION_DENIED = "permission_denied"
    NETWORK_ERROR = "network_error"
    ENV_VAR_MISSING = "env_var_missing"
    HEALTHCHECK_FAILED = "healthcheck_failed"
    STARTUP_FAILED = "startup_failed"
    UNKNOWN = "unknown"


class ErrorStage(str, Enum):
    """Stage at which the output was captured."""

    PRE_FLIGHT = "pre_flight"
    BUILD = "build"
    DEPLOY = "deploy"
    RUNTIME = "runtime"


# Host resource faults that no file edit can repair
RESOURCE_FAULT_CATEGORIES: frozenset[ErrorCategory] = frozenset(
    {
        ErrorCategory.PORT_CONFLICT,
        ErrorCategory.DISK_FULL,
        ErrorCategory.MEMORY_EXCEEDED,
    }
)


class ErrorLocation(BaseModel):
    """File position an error points at."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    file: str
    line: int | None = None


class ParsedError(BaseModel):
    """Structured view of a failure output."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    category: ErrorCategory
    stage: ErrorStage
    message: str
    location: ErrorLocation | None = None
    context: list[str] = Field(default_factory=list)
    exit_code: int | None = None

    @property
    def is_resource_fault(self) -> bool:
        """True when the error is a host resource fault."""
        return self.category in RESOURCE_FAULT_CATEGORIES


class ErrorAnalysis(BaseModel):
    """Parsed error plus the usual causes of its category."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    error: ParsedError
    possible_causes: list[str] = Field(default_factory=list)


MessageFn = Callable[[re.Match[str], str], str]
LocationFn = Callable[[re.Match[str], str], ErrorLocation | None]


@dataclass(frozen=True)
class ErrorPattern:
    """A regex over tool output and how to describe a match."""

    pattern: re.Pattern[str]
    category: ErrorCategory
    message: MessageFn | None = None
    location: LocationFn | None = None


def _dockerfile_line(match: re.Match[str], output: str) -> ErrorLocation | None:
    line = re.search(r"line (\d+):", output, re.IGNORECASE)
    return ErrorLocation(file="Dockerfile", line=int(line.group(1))) if line else None


def _dockerfile_syntax_message(match: re.Match[str], output: str) -> str:
    line = re.search(r"line (\d+):", output, re.IGNORECASE)
    if line:
        return f"Dockerfile syntax error on line {line.group(1)}"
    return "Dockerfile syntax error"


def _build_step_message(match: re.Match[str], output: str) -> str:
    cmd = re.search(r">>>\s*(RUN|COPY|ADD|CMD|ENTRYPOINT)\s+(.+)", output, re.I)
    if cmd:
        return f"Build failed at: {cmd.group(1)} {cmd.group(2)[:100]}"
    return f"Build failed at Dockerfile line {match.group(1)}"


def _compose_location(match: re.Match[str], output: str) -> ErrorLocation | None:
    line = re.search(r"line\s+(\d+)", output, re.IGNORECASE)
    if line:
        return ErrorLocation(file="docker-compose.yml", line=int(line.group(1)))
    return None


def _image_message(match: re.Match[str], output: str) -> str:
    image = re.search(
        r"(?:manifest|image)\s+(?:for\s+)?[\"']?([^\"'\s]+)[\"']?.*not found",
        output,
        re.IGNORECASE,
    )
    if image:
        return f"Docker image not found: {image.group(1)}"
    return "Docker image not found"


def _port_message(match: re.Match[str], output: str) -> str:
    port = re.search(r"(?:port\s*|:)(\d{2,5})", output, re.IGNORECASE)
    if port:
        return f"Port {port.group(1)} is already in use"
    return "Port conflict detected"


def _permission_message(match: re.Match[str], output: str) -> str:
    path = re.search(r"permission denied.*['\"]([^'\"]+)['\"]", output, re.I)
    return f"Permission denied: {path.group(1)}" if path else "Permission denied"


def _env_var_message(match: re.Match[str], output: str) -> str:
    var = re.search(r"(?:variable|env)\s+['\"]?(\w+)['\"]?", output, re.I)
    if var:
        return f"Missing environment variable: {var.group(1)}"
    return "Required environment variable not set"


def _startup_message(match: re.Match[str], output: str) -> str:
    code = re.search(r"exited with code (\d+)", output, re.IGNORECASE)
    if code:
        return f"Container exited with code {code.group(1)}"
    return "Container failed to start"


def _fixed(message: str) -> MessageFn:
    return lambda match, output: message


ERROR_PATTERNS: tuple[ErrorPattern, ...] = (
    ErrorPattern(
        re.compile(r"failed to solve:.*dockerfile parse error", re.I),
        ErrorCategory.DOCKERFILE_INVALID,
        _dockerfile_syntax_message,
        _dockerfile_line,
    ),
    ErrorPattern(
        re.compile(r"Dockerfile:(\d+)\s*[->\s]*.*\n.*(?:failed|error|exit code)", re.I),
        ErrorCategory.BUILD_FAILED,
        _build_step_message,
        lambda match, output: ErrorLocation(
            file="Dockerfile", line=int(match.group(1))
        ),
    ),
    ErrorPattern(
        re.compile(
            r"failed to solve:.*did not complete successfully.*exit code:\s*(\d+)",
            re.I,
        ),
        ErrorCategory.BUILD_FAILED,
        lambda match, output: (
            f"Build process failed with exit code {match.group(1)}"
        ),
    ),
    ErrorPattern(
        re.compile(r"npm ERR!.*ENOENT", re.I),
        ErrorCategory.DEPENDENCY_MISSING,
        _fixed("npm could not find a required file or package"),
    ),
    ErrorPattern(
        re.compile(r"npm ERR!.*ERESOLVE", re.I),
        ErrorCategory.DEPENDENCY_CONFLICT,
        _fixed("npm dependency resolution conflict"),
    ),
    ErrorPattern(
        re.compile(r"npm ERR! code E404", re.I),
        ErrorCategory.DEPENDENCY_MISSING,
        _fixed("npm package not found"),
    ),
    ErrorPattern(
        re.compile(r"No matching distribution found for (\S+)", re.I),
        ErrorCategory.DEPENDENCY_MISSING,
        lambda match, output: f"Package not found: {match.group(1)}",
    ),
    ErrorPattern(
        re.compile(r"yaml:\s*(line\s+\d+:|.*did not find expected)", re.I),
        ErrorCategory.COMPOSE_INVALID,
        lambda match, output: (
            f"docker-compose.yml YAML error: {match.group(0)[:100]}"
        ),
        _compose_location,
    ),
    ErrorPattern(
        re.compile(r"services\.[^:]+:\s+Additional property.*not allowed", re.I),
        ErrorCategory.COMPOSE_INVALID,
        lambda match, output: (
            f"Invalid property in docker-compose.yml: {match.group(0)[:100]}"
        ),
    ),
    ErrorPattern(
        re.compile(r"manifest.*not found|image.*not found|pull access denied", re.I),
        ErrorCategory.IMAGE_NOT_FOUND,
        _image_message,
    ),
    ErrorPattern(
        re.compile(r"error.*pulling.*image|failed to pull", re.I),
        ErrorCategory.IMAGE_PULL_FAILED,
        _fixed("Failed to pull Docker image from registry"),
    ),
    ErrorPattern(
        re.compile(r"bind:.*address already in use|port.*already allocated", re.I),
        ErrorCategory.PORT_CONFLICT,
        _port_message,
    ),
    ErrorPattern(
        re.compile(r"OOMKilled|out of memory|memory.*exceeded", re.I),
        ErrorCategory.MEMORY_EXCEEDED,
        _fixed("Container ran out of memory"),
    ),
    ErrorPattern(
        re.compile(r"no space left on device|disk.*full", re.I),
        ErrorCategory.DISK_FULL,
        _fixed("No disk space available"),
    ),
    ErrorPattern(
        re.compile(r"permission denied|EACCES|access denied", re.I),
        ErrorCategory.PERMISSION_DENIED,
        _permission_message,
    ),
    ErrorPattern(
        re.compile(
            r"network.*unreachable|connection.*refused|ECONNREFUSED|ETIMEDOUT", re.I
        ),
        ErrorCategory.NETWORK_ERROR,
        _fixed("Network connection failed"),
    ),
    ErrorPattern(
        re.compile(r"timeout|timed out|deadline exceeded", re.I),
        ErrorCategory.TIMEOUT,
        _fixed("Operation timed out"),
    ),
    ErrorPattern(
        re.compile(
            r"environment variable.*not set|missing.*env|undefined.*variable", re.I
        ),
        ErrorCategory.ENV_VAR_MISSING,
        _env_var_message,
    ),
    ErrorPattern(
        re.compile(r"health.*check.*fail|unhealthy", re.I),
        ErrorCategory.HEALTHCHECK_FAILED,
        _fixed("Container healthcheck failed"),
    ),
    ErrorPattern(
        re.compile(r"exited with code [1-9]|container.*stopped|failed to start", re.I),
        ErrorCategory.STARTUP_FAILED,
        _startup_message,
    ),
)

POSSIBLE_CAUSES: dict[ErrorCategory, list[str]] = {
    ErrorCategory.BUILD_FAILED: [
        "Build command in Dockerfile failed to execute",
        "Missing dependencies not installed before build",
        "Incorrect working directory in Dockerfile",
    ],
    ErrorCategory.DOCKERFILE_INVALID: [
        "Invalid Dockerfile syntax",
        "Missing required instruction (FROM, etc.)",
    ],
    ErrorCategory.COMPOSE_INVALID: [
        "YAML syntax error in docker-compose.yml",
        "Missing required fields in service definition",
    ],
    ErrorCategory.DEPENDENCY_MISSING: [
        "Package not listed in dependencies",
        "Typo in package name",
    ],
    ErrorCategory.DEPENDENCY_CONFLICT: [
        "Conflicting peer dependency versions",
        "Lock file out of sync with the manifest",
    ],
    ErrorCategory.PORT_CONFLICT: [
        "Another container or process is using this port",
        "Previous deployment not properly cleaned up",
    ],
    ErrorCategory.IMAGE_NOT_FOUND: [
        "Typo in image name or tag",
        "Private registry without authentication",
    ],
    ErrorCategory.ENV_VAR_MISSING: [
        "Required environment variable not configured",
        "Typo in environment variable name",
    ],
    ErrorCategory.PERMISSION_DENIED: [
        "File ownership issues in container",
        "Running as non-root without proper permissions",
    ],
    ErrorCategory.MEMORY_EXCEEDED: [
        "Container memory limit too low",
        "Large build process exhausting memory",
    ],
    ErrorCategory.TIMEOUT: [
        "Slow network causing image pull timeout",
        "Application hanging during startup",
    ],
}

_ERROR_LINE = re.compile(r"\b(error|failed|fatal|exception)\b", re.IGNORECASE)
_EXIT_CODE = re.compile(r"(?:exit code|exited with code)[:\s]*(\d+)", re.IGNORECASE)


def _extract_context(output: str, index: int) -> list[str]:
    lines = output.split("\n")
    line_index = output[:index].count("\n")
    start = max(0, line_index - 3)
    end = min(len(lines), line_index + 7)
    return [line for line in lines[start:end] if line.strip()]


def _extract_exit_code(output: str) -> int | None:
    match = _EXIT_CODE.search(output)
    return int(match.group(1)) if match else None


def _extract_first_error(output: str) -> str | None:
    for line in output.splitlines():
        stripped = line.strip()
        if stripped and _ERROR_LINE.search(stripped):
            return stripped[:200]
    return None


def parse_error(raw_output: str, stage: ErrorStage | str) -> ParsedError:
    """Classify raw tool output.

    Args:
        raw_output: Captured build or deploy output.
        stage: Stage the output was captured at.

    Returns:
        ParsedError with the first matching category, or ``unknown``.
    """
    stage = ErrorStage(stage)
    for entry in ERROR_PATTERNS:
        match = entry.pattern.search(raw_output)
        if match is None:
            continue
        message = (
            entry.message(match, raw_output) if entry.message else match.group(0)[:200]
        )
        return ParsedError(
            category=entry.category,
            stage=stage,
            message=message,
            location=entry.location(match, raw_output) if entry.location else None,
            context=_extract_context(raw_output, match.start()),
            exit_code=_extract_exit_code(raw_output),
        )

    return ParsedError(
        category=ErrorCategory.UNKNOWN,
        stage=stage,
        message=_extract_first_error(raw_output) or "Unknown deployment error",
        context=_extract_context(raw_output, 0),
        exit_code=_extract_exit_code(raw_output),
    )


def analyze_error(raw_output: str, stage: ErrorStage | str) -> ErrorAnalysis:
    """Parse output and attach the usual causes of its category."""
    error = parse_error(raw_output, stage)
    causes = POSSIBLE_CAUSES.get(
        error.category, ["Unable to automatically determine the cause"]
    )
    return ErrorAnalysis(error=error, possible_causes=list(causes))
