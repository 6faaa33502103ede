from __future__ import annotations
import os
import re
import subprocess
import json
import requests
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Dict, Any, Optional, Union

from settings import Config, NotifyConfig

# --- Helper for Centralized Logging ---
def log_message(message: str):
    """Prints a message to the service log."""
    print(message, flush=True)

# --- Errors ---

class ExternalToolError(RuntimeError):
    """Raised when restic fails or produces output that cannot be understood."""
    def __init__(self, message: str, exit_code: Optional[int] = None, stderr: str = ""):
        super().__init__(message)
        self.exit_code = exit_code
        self.stderr = stderr

class SnapshotNotFound(ExternalToolError):
    pass

class RepositoryAuthError(ExternalToolError):
    pass

# --- Result Types ---

@dataclass(frozen=True)
class SnapshotSummary:
    id: str
    time: datetime
    paths: tuple = ()
    tags: frozenset = frozenset()
    short_id: Optional[str] = None
    hostname: Optional[str] = None
    username: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "id": self.id,
            "time": self.time.isoformat(),
            "paths": list(self.paths),
            "tags": sorted(self.tags),
        }
        for key in ("short_id", "hostname", "username"):
            value = getattr(self, key)
            if value is not None:
                data[key] = value
        return data

@dataclass(frozen=True)
class StatsResult:
    total_size: int
    total_file_count: Optional[int] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data = {**self.extra, "total_size": self.total_size}
        # raw-data mode reports no file count
        if self.total_file_count is not None:
            data["total_file_count"] = self.total_file_count
        return data

class ContractViolation(ValueError):
    """restic exited 0 but its stdout is not what we expect."""

# Matches "wrong password or no key found" and friends.
_AUTH_RE = re.compile(r"wrong password", re.IGNORECASE)
_NOT_FOUND_RE = re.compile(r"no matching id found|no snapshot found|no such snapshot", re.IGNORECASE)
RESTIC_WRONG_PASSWORD_EXIT = 12

@dataclass(frozen=True)
class Success:
    data: Any = None
    ok = True

    def unwrap(self) -> Any:
        return self.data

@dataclass(frozen=True)
class Failure:
    exit_code: int
    stderr: str
    reason: str = "exit"  # "exit", "contract" or "launch"
    by_id: bool = False  # the command addressed a single snapshot id
    ok = False

    @property
    def detail(self) -> str:
        """The most useful line of restic's stderr, preferring its JSON exit_error message."""
        messages = []
        for line in self.stderr.splitlines():
            line = line.strip()
            if not line:
                continue
            if line.startswith('{'):
                try:
                    payload = json.loads(line)
                except ValueError:
                    payload = None
                if isinstance(payload, dict) and payload.get("message_type") in ("exit_error", "error"):
                    message = payload.get("message")
                    if not message and isinstance(payload.get("error"), dict):
                        message = payload["error"].get("message")
                    if message:
                        return str(message).strip()
                    continue
            messages.append(line)
        return "\n".join(messages)

    @property
    def is_not_found(self) -> bool:
        return self.by_id and self.reason == "exit" and bool(_NOT_FOUND_RE.search(self.stderr))

    @property
    def is_auth_failure(self) -> bool:
        if self.reason != "exit":
            return False
        return self.exit_code == RESTIC_WRONG_PASSWORD_EXIT or bool(_AUTH_RE.search(self.stderr))

    @property
    def error_message(self) -> str:
        detail = self.detail
        if self.reason == "contract":
            return f"Unexpected restic output: {detail or 'empty output'}"
        if self.reason == "launch":
            return f"Failed to execute restic: {detail or 'unknown error'}"
        if self.is_auth_failure:
            return f"repository authentication failed: {detail or 'wrong password'}"
        if not detail:
            return f"Restic error: exited with status {self.exit_code}"
        return f"Restic error: {detail}"

    def unwrap(self):
        if self.is_not_found:
            raise SnapshotNotFound(self.error_message, self.exit_code, self.stderr)
        if self.is_auth_failure:
            raise RepositoryAuthError(self.error_message, self.exit_code, self.stderr)
        raise ExternalToolError(self.error_message, self.exit_code, self.stderr)

CommandOutcome = Union[Success, Failure]

# --- Output Parsing ---

_FRACTION_RE = re.compile(r"\.(\d+)")

def parse_restic_time(value: str) -> datetime:
    """restic reports up to nine fractional digits with trailing zeros dropped; datetime wants exactly six."""
    text = _FRACTION_RE.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), value.strip(), count=1)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return datetime.fromisoformat(text)

def parse_snapshot(raw: Any) -> SnapshotSummary:
    if not isinstance(raw, dict):
        raise ContractViolation(f"snapshot entry is not an object: {raw!r}")
    snapshot_id = raw.get("id")
    if not isinstance(snapshot_id, str) or not snapshot_id:
        raise ContractViolation("snapshot entry has no id")
    try:
        time = parse_restic_time(raw["time"])
    except (KeyError, TypeError, ValueError, AttributeError) as e:
        raise ContractViolation(f"snapshot {snapshot_id} has an invalid time: {e}") from e
    paths = raw.get("paths") or []
    tags = raw.get("tags") or []
    if not isinstance(paths, list) or not isinstance(tags, list):
        raise ContractViolation(f"snapshot {snapshot_id} has malformed paths or tags")
    return SnapshotSummary(
        id=snapshot_id,
        time=time,
        paths=tuple(str(p) for p in paths),
        tags=frozenset(str(t) for t in tags),
        short_id=raw.get("short_id"),
        hostname=raw.get("hostname"),
        username=raw.get("username"),
    )

def parse_snapshots(stdout: str) -> List[SnapshotSummary]:
    data = _load_json(stdout)
    # restic prints "null" for a repository without snapshots
    if data is None:
        return []
    if not isinstance(data, list):
        raise ContractViolation("expected a JSON array of snapshots")
    return [parse_snapshot(item) for item in data]

def parse_stats(stdout: str) -> StatsResult:
    data = _load_json(stdout)
    if not isinstance(data, dict):
        raise ContractViolation("expected a JSON object of stats")
    total_size = data.get("total_size")
    total_file_count = data.get("total_file_count")
    for name, value, required in (("total_size", total_size, True), ("total_file_count", total_file_count, False)):
        if value is None and not required:
            continue
        if isinstance(value, bool) or not isinstance(value, int):
            raise ContractViolation(f"stats field '{name}' is missing or not an integer")
    extra = {k: v for k, v in data.items() if k not in ("total_size", "total_file_count")}
    return StatsResult(total_size=total_size, total_file_count=total_file_count, extra=extra)

def _load_json(stdout: str) -> Any:
    try:
        return json.loads(stdout)
    except ValueError as e:
        raise ContractViolation(f"Failed to parse JSON: {e}") from e

# --- Client Classes for External Commands ---

class SubprocessClient:
    """A base class for running external commands and capturing their result."""
    def __init__(self, timeout: Optional[float] = None):
        self.timeout = timeout

    def _env(self) -> Dict[str, str]:
        return os.environ.copy()

    def _run(self, command: List[str], log_command: bool = True) -> Union[subprocess.CompletedProcess, Failure]:
        if log_command:
            log_message(f"Executing: {' '.join(command)}")
        try:
            return subprocess.run(command, capture_output=True, text=True, env=self._env(), timeout=self.timeout)
        except FileNotFoundError as e:
            return Failure(127, str(e), reason="launch")
        except subprocess.TimeoutExpired:
            return Failure(-1, f"{command[0]} timed out after {self.timeout} seconds", reason="launch")
        except OSError as e:
            return Failure(-1, str(e), reason="launch")

class ResticClient(SubprocessClient):
    """A client for handling Restic commands against the configured repository."""
    def __init__(self, config: Config):
        super().__init__(timeout=config.restic.timeout)
        self.binary = config.restic.binary
        self.repository = config.repository

    def _env(self) -> Dict[str, str]:
        env = super()._env()
        env["RESTIC_REPOSITORY"] = self.repository.path
        env["RESTIC_PASSWORD"] = self.repository.password
        # a password file or command from the caller's environment would override ours
        env.pop("RESTIC_PASSWORD_FILE", None)
        env.pop("RESTIC_PASSWORD_COMMAND", None)
        return env

    def _call(self, args: List[str], parse=None, by_id: bool = False) -> CommandOutcome:
        result = self._run([self.binary] + args)
        if isinstance(result, Failure):
            log_message(f"!!! {result.error_message}")
            return result
        stderr = result.stderr or ""
        # older restic versions skip unknown ids in forget and still exit 0
        if result.returncode != 0 or (by_id and _NOT_FOUND_RE.search(stderr)):
            failure = Failure(result.returncode, stderr, by_id=by_id)
            log_message(f"!!! restic {args[0]} failed with status {result.returncode}: {failure.detail}")
            return failure
        if parse is None:
            return Success(None)
        try:
            return Success(parse(result.stdout))
        except ContractViolation as e:
            log_message(f"!!! restic {args[0]} returned unexpected output: {e}")
            return Failure(0, str(e), reason="contract")

    def get_stats(self) -> CommandOutcome:
        return self._call(['stats', '--json'], parse=parse_stats)

    def list_snapshots(self) -> CommandOutcome:
        return self._call(['snapshots', '--json'], parse=parse_snapshots)

    def delete_snapshot(self, snapshot_id: str) -> CommandOutcome:
        if not snapshot_id:
            raise ValueError("snapshot id must not be empty")
        # ids are untrusted: after "--" restic cannot read them as options
        return self._call(['forget', '--json', '--prune', '--', snapshot_id], by_id=True)

    def restore_snapshot(self, snapshot_id: str, target_dir: str) -> CommandOutcome:
        if not snapshot_id:
            raise ValueError("snapshot id must not be empty")
        if not target_dir:
            raise ValueError("target directory must not be empty")
        return self._call(['restore', f'--target={target_dir}', '--', snapshot_id], by_id=True)

class NotificationClient:
    """A client for sending Gotify notifications."""
    def __init__(self, config: NotifyConfig):
        self.config = config

    def send(self, title: str, message: str, priority: int = 5) -> bool:
        if not self.config.enabled:
            return False

        log_message(f"Sending Gotify notification: {title}")
        try:
            requests.post(
                self.config.gotify_url,
                params={"token": self.config.gotify_token},
                json={"title": title, "message": message, "priority": priority},
                timeout=10,
            ).raise_for_status()
        except requests.RequestException as e:
            log_message(f"!!! Could not send Gotify notification. Error: {e}")
            return False
        return True
