"""
Artifact persistence: atomic JSON writes, version-stamped artifacts with a
LATEST pointer, an advisory lock per artifact, and the append-only place-lookup
event log.
"""
import hashlib
import json
import os
import tempfile
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence, Set, Union

from loguru import logger

from techindex.errors import ConcurrentWriteError, MissingInputError

PathLike = Union[str, Path]

LATEST_POINTER = "LATEST"


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def sha256_text(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def dumps(payload: Any) -> str:
    return json.dumps(payload, indent=2, ensure_ascii=False)


def write_text_atomic(target: PathLike, text: str) -> None:
    """Write text to target via a temp file in the same directory + os.replace."""
    target = Path(target)
    target.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(prefix=target.stem + "_", suffix=".tmp", dir=str(target.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(text)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp_path, str(target))
    except Exception as e:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)
        logger.error(f"Failed to write {target} atomically: {e}")
        raise


def write_json_atomic(target: PathLike, payload: Any) -> str:
    """Atomically write JSON; returns the sha256 of the written text."""
    text = dumps(payload)
    write_text_atomic(target, text)
    logger.debug(f"Atomically wrote JSON: {target}")
    return sha256_text(text)


def read_json(path: PathLike) -> Any:
    with Path(path).open("r", encoding="utf-8") as fh:
        return json.load(fh)


@contextmanager
def artifact_lock(target: PathLike) -> Iterator[Path]:
    """Advisory lock next to `target`. Raises ConcurrentWriteError if already held."""
    lock_path = Path(f"{target}.lock")
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    try:
        fd = os.open(str(lock_path), os.O_CREAT | os.O_EXCL | os.O_WRONLY)
    except FileExistsError:
        holder = ""
        try:
            holder = lock_path.read_text(encoding="utf-8").strip()
        except OSError:
            pass
        raise ConcurrentWriteError(str(lock_path), holder)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(f"pid={os.getpid()} at={utc_now()}")
        yield lock_path
    finally:
        try:
            lock_path.unlink()
        except FileNotFoundError:
            pass


class ArtifactStore:
    """
    Named artifacts under a root directory.

    Each write lands on a new version-stamped file `<name>/<name>.<stamp>.<hash8>.json`
    and then moves the `<name>/LATEST` pointer; readers never see a partial file and
    earlier versions remain for rollback. Reads fall back to flat legacy paths.
    """

    def __init__(self, root: PathLike, legacy_paths: Optional[Dict[str, Sequence[str]]] = None):
        self.root = Path(root)
        self.legacy_paths = {k: list(v) for k, v in (legacy_paths or {}).items()}
        self._held: Set[str] = set()

    def artifact_dir(self, name: str) -> Path:
        return self.root / name

    @contextmanager
    def lock(self, name: str) -> Iterator[None]:
        """Hold the artifact's advisory lock, e.g. across a read-modify-write stage."""
        if name in self._held:
            yield
            return
        with artifact_lock(self.artifact_dir(name) / name):
            self._held.add(name)
            try:
                yield
            finally:
                self._held.discard(name)

    def pointer_path(self, name: str) -> Path:
        return self.artifact_dir(name) / LATEST_POINTER

    def candidate_paths(self, name: str) -> List[Path]:
        paths: List[Path] = []
        pointer = self.pointer_path(name)
        if pointer.exists():
            paths.append(self.artifact_dir(name) / pointer.read_text(encoding="utf-8").strip())
        else:
            paths.append(pointer)
        paths.append(self.root / f"{name}.json")
        paths.extend(self.root / rel for rel in self.legacy_paths.get(name, []))
        return paths

    def latest_path(self, name: str) -> Optional[Path]:
        for path in self.candidate_paths(name):
            if path.name != LATEST_POINTER and path.is_file():
                return path
        return None

    def exists(self, name: str) -> bool:
        return self.latest_path(name) is not None

    def read(self, name: str, rows_key: Optional[str] = None) -> Dict[str, Any]:
        """
        Load the current version of an artifact.

        Args:
            name: Artifact name.
            rows_key: When given, the artifact must hold a non-empty list under this key.

        Raises:
            MissingInputError: listing every path tried, in order.
        """
        tried = self.candidate_paths(name)
        path = self.latest_path(name)
        if path is None:
            raise MissingInputError(name, tried)
        payload = read_json(path)
        if rows_key is not None and not payload.get(rows_key):
            raise MissingInputError(name, [path], reason=f"zero rows under '{rows_key}'")
        logger.debug(f"Read {name} from {path}")
        return payload

    def write(self, name: str, payload: Dict[str, Any]) -> Path:
        directory = self.artifact_dir(name)
        text = dumps(payload)
        digest = sha256_text(text)
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
        filename = f"{name}.{stamp}.{digest[:8]}.json"
        with self.lock(name):
            write_text_atomic(directory / filename, text)
            write_text_atomic(self.pointer_path(name), filename)
        logger.info(f"Wrote {name} -> {directory / filename}")
        return directory / filename

    def versions(self, name: str) -> List[Path]:
        directory = self.artifact_dir(name)
        if not directory.exists():
            return []
        return sorted(directory.glob(f"{name}.*.json"))

    def rollback(self, name: str) -> Optional[Path]:
        """Point LATEST at the previous version, if there is one."""
        versions = self.versions(name)
        current = self.latest_path(name)
        if current not in versions:
            return None
        idx = versions.index(current)
        if idx == 0:
            return None
        previous = versions[idx - 1]
        write_text_atomic(self.pointer_path(name), previous.name)
        logger.info(f"Rolled back {name} -> {previous}")
        return previous


class EventLog:
    """Append-only JSONL log of external fetches; the seen set is rebuilt by replay."""

    def __init__(self, path: PathLike):
        self.path = Path(path)
        self.corrupt_lines = 0

    def append(self, event: Dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("a", encoding="utf-8") as fh:
            fh.write(json.dumps(event, ensure_ascii=False) + "\n")
            fh.flush()
            os.fsync(fh.fileno())

    def replay(self) -> Iterator[Dict[str, Any]]:
        self.corrupt_lines = 0
        if not self.path.exists():
            return
        with self.path.open("r", encoding="utf-8") as fh:
            for line in fh:
                text = line.strip()
                if not text:
                    continue
                try:
                    event = json.loads(text)
                except json.JSONDecodeError:
                    self.corrupt_lines += 1
                    logger.warning(f"Skipping corrupt event log line in {self.path}: {text[:120]}")
                    continue
                if isinstance(event, dict):
                    yield event

    def events(self) -> List[Dict[str, Any]]:
        return list(self.replay())

    def seen_keys(self) -> Set[str]:
        seen: Set[str] = set()
        for event in self.replay():
            key = str(event.get("addressKey") or "").strip()
            if key:
                seen.add(key)
        return seen

    def text(self) -> str:
        return self.path.read_text(encoding="utf-8") if self.path.exists() else ""
