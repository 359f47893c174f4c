"""
Step loader — parses ``#!meta`` headers into StepDescriptors.

Steps live anywhere under the steps directory as ``*.sh`` or ``*.py``
files. Each carries a comment-delimited YAML header::

    #!meta
    # id: core/01-database
    # name: PostgreSQL + Drizzle ORM
    # phase: 1
    # phase_name: Database
    # profile_tags:
    #   - all
    # depends_on:
    #   - core/00-nextjs
    # required_vars:
    #   - DB_NAME
    #   - DB_HOST=localhost
    # dependencies:
    #   packages:
    #     - drizzle-orm@^0.33.0
    #   dev_packages:
    #     - drizzle-kit
    #!endmeta

Parsing is pure: no step is executed and nothing is written. Headers
are validated eagerly so a malformed registry never starts a run.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Any

import yaml

from src.core.errors import MalformedMetadata
from src.core.models.step import PackageSpec, RequiredVar, StepDescriptor

logger = logging.getLogger(__name__)

META_START = "#!meta"
META_END = "#!endmeta"

STEP_SUFFIXES = (".sh", ".py")

_VAR_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_PACKAGE = re.compile(
    r"^(?P<name>(?:@[a-z0-9][\w.-]*/)?[a-z0-9][\w.-]*)(?:@(?P<constraint>[^\s@]+))?$",
    re.IGNORECASE,
)


def extract_header(source: str) -> str | None:
    """Return the YAML text of the ``#!meta`` block, or None if absent."""
    lines = source.splitlines()
    body: list[str] = []
    inside = False

    for line in lines:
        stripped = line.strip()
        if not inside:
            if stripped == META_START:
                inside = True
            continue
        if stripped == META_END:
            return "\n".join(body)
        if not stripped.startswith("#"):
            raise MalformedMetadata("Header line is not a comment: " + line.strip())
        text = stripped[1:]
        # "# key: value" → "key: value"; keep nested indentation intact
        if text.startswith(" "):
            text = text[1:]
        body.append(text)

    if inside:
        raise MalformedMetadata(f"Unterminated {META_START} block (no {META_END})")
    return None


def parse(source: str, origin: str = "<string>") -> StepDescriptor:
    """Parse one step source into a StepDescriptor.

    Args:
        source: Full text of the step file.
        origin: Where the text came from (used in error messages).

    Raises:
        MalformedMetadata: If the header is absent, lacks ``id``/``name``/
            ``phase``, or has malformed dependency/package syntax.
    """
    try:
        header = extract_header(source)
    except MalformedMetadata as e:
        raise MalformedMetadata(f"{origin}: {e}") from e

    if header is None:
        raise MalformedMetadata(f"{origin}: no {META_START} header")

    try:
        data = yaml.safe_load(header) or {}
    except yaml.YAMLError as e:
        raise MalformedMetadata(f"{origin}: invalid YAML in header: {e}") from e

    if not isinstance(data, dict):
        raise MalformedMetadata(
            f"{origin}: header must be a mapping, got {type(data).__name__}"
        )

    return _build_descriptor(data, origin)


def parse_file(path: Path) -> StepDescriptor:
    """Parse a step file, recording its path on the descriptor."""
    try:
        source = path.read_text(encoding="utf-8")
    except OSError as e:
        raise MalformedMetadata(f"{path}: cannot read: {e}") from e
    descriptor = parse(source, origin=str(path))
    return descriptor.model_copy(update={"source_path": path})


def has_header(path: Path) -> bool:
    """Cheap check used to tell steps apart from helper scripts."""
    try:
        with path.open("r", encoding="utf-8") as f:
            for i, line in enumerate(f):
                if line.strip() == META_START:
                    return True
                if i > 10:
                    return False
    except (OSError, UnicodeDecodeError):
        return False
    return False


def discover_step_files(source_root: Path) -> list[Path]:
    """Find candidate step files, skipping ``_``-prefixed directories."""
    if not source_root.is_dir():
        logger.debug("Steps directory not found: %s", source_root)
        return []

    files: list[Path] = []
    for path in sorted(source_root.rglob("*")):
        if not path.is_file() or path.suffix not in STEP_SUFFIXES:
            continue
        rel_parts = path.relative_to(source_root).parts[:-1]
        if any(part.startswith(("_", ".")) for part in rel_parts):
            continue
        if not has_header(path):
            logger.debug("No meta header, treating as helper: %s", path)
            continue
        files.append(path)
    return files


def load_all(source_root: Path) -> list[StepDescriptor]:
    """Load every step under ``source_root``.

    Returns descriptors grouped by phase ascending, sorted by id within
    a phase. All problems are collected and reported together.

    Raises:
        MalformedMetadata: On any malformed header or duplicate id.
    """
    problems: list[str] = []
    by_id: dict[str, StepDescriptor] = {}

    for path in discover_step_files(source_root):
        try:
            descriptor = parse_file(path)
        except MalformedMetadata as e:
            problems.extend(e.problems)
            continue

        existing = by_id.get(descriptor.id)
        if existing is not None:
            problems.append(
                f"Duplicate step id '{descriptor.id}': "
                f"{existing.source_path} and {path}"
            )
            continue
        by_id[descriptor.id] = descriptor

    if problems:
        raise MalformedMetadata(
            f"{len(problems)} malformed step header(s):\n  - " + "\n  - ".join(problems),
            problems=problems,
        )

    steps = sorted(by_id.values(), key=lambda s: (s.phase, s.id))
    logger.info("Loaded %d steps from %s", len(steps), source_root)
    return steps


# ── Field parsing ───────────────────────────────────────────────


def _build_descriptor(data: dict[str, Any], origin: str) -> StepDescriptor:
    problems: list[str] = []

    step_id = _scalar(data.get("id"))
    name = _scalar(data.get("name"))
    raw_phase = data.get("phase")

    if not step_id:
        problems.append(f"{origin}: missing 'id'")
    if not name:
        problems.append(f"{origin}: missing 'name'")

    phase = -1
    if raw_phase is None or raw_phase == "":
        problems.append(f"{origin}: missing 'phase'")
    elif isinstance(raw_phase, bool) or not _is_int(raw_phase):
        problems.append(f"{origin}: non-numeric phase {raw_phase!r}")
    else:
        phase = int(raw_phase)
        if phase < 0:
            problems.append(f"{origin}: negative phase {phase}")

    tags = _string_list(data.get("profile_tags"), "profile_tags", origin, problems)
    depends_on = _string_list(data.get("depends_on"), "depends_on", origin, problems)
    required = _required_vars(data.get("required_vars"), origin, problems)

    deps_block = data.get("dependencies") or {}
    packages: list[PackageSpec] = []
    if not isinstance(deps_block, dict):
        problems.append(f"{origin}: 'dependencies' must be a mapping")
    else:
        packages.extend(_packages(deps_block.get("packages"), "prod", origin, problems))
        packages.extend(_packages(deps_block.get("dev_packages"), "dev", origin, problems))

    timeout = data.get("timeout")
    if timeout is not None and (isinstance(timeout, bool) or not _is_int(timeout) or int(timeout) <= 0):
        problems.append(f"{origin}: timeout must be a positive integer")
        timeout = None

    if step_id and step_id in depends_on:
        problems.append(f"{origin}: step depends on itself")

    if problems:
        raise MalformedMetadata("; ".join(problems), problems=problems)

    return StepDescriptor(
        id=step_id,
        name=name,
        phase=phase,
        phase_name=_scalar(data.get("phase_name")),
        profile_tags=frozenset(tags),
        depends_on=frozenset(depends_on),
        required_vars=tuple(required),
        packages=tuple(packages),
        timeout=int(timeout) if timeout is not None else None,
    )


def _scalar(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _is_int(value: Any) -> bool:
    try:
        int(str(value).strip())
    except ValueError:
        return False
    return True


def _items(value: Any, field: str, origin: str, problems: list[str]) -> list[Any]:
    """Normalise a YAML list field; ``None`` items (bare ``-``) are dropped."""
    if value is None:
        return []
    if isinstance(value, str):
        return [v.strip() for v in value.split(",") if v.strip()]
    if not isinstance(value, list):
        problems.append(f"{origin}: '{field}' must be a list")
        return []
    return [v for v in value if v is not None and v != ""]


def _string_list(value: Any, field: str, origin: str, problems: list[str]) -> list[str]:
    result: list[str] = []
    for item in _items(value, field, origin, problems):
        if not isinstance(item, (str, int)) or isinstance(item, bool):
            problems.append(f"{origin}: '{field}' entry {item!r} is not a string")
            continue
        text = str(item).strip()
        if not text or any(c.isspace() for c in text):
            problems.append(f"{origin}: malformed '{field}' entry {item!r}")
            continue
        result.append(text)
    return result


def _required_vars(value: Any, origin: str, problems: list[str]) -> list[RequiredVar]:
    result: list[RequiredVar] = []
    seen: set[str] = set()

    for item in _items(value, "required_vars", origin, problems):
        if isinstance(item, dict):
            pairs = [(str(k), None if v is None else str(v)) for k, v in item.items()]
        elif isinstance(item, str):
            if "=" in item:
                key, default = item.split("=", 1)
                pairs = [(key.strip(), default.strip())]
            else:
                pairs = [(item.strip(), None)]
        else:
            problems.append(f"{origin}: malformed required_vars entry {item!r}")
            continue

        for key, default in pairs:
            if not _VAR_NAME.match(key):
                problems.append(f"{origin}: invalid variable name {key!r}")
                continue
            if key in seen:
                continue
            seen.add(key)
            result.append(RequiredVar(name=key, default=default))
    return result


def _packages(value: Any, kind: str, origin: str, problems: list[str]) -> list[PackageSpec]:
    field = "dependencies.packages" if kind == "prod" else "dependencies.dev_packages"
    result: list[PackageSpec] = []

    for item in _items(value, field, origin, problems):
        if not isinstance(item, str):
            problems.append(f"{origin}: malformed {field} entry {item!r}")
            continue
        match = _PACKAGE.match(item.strip())
        if not match:
            problems.append(f"{origin}: malformed {field} entry {item!r}")
            continue
        result.append(
            PackageSpec(
                name=match.group("name"),
                version_constraint=match.group("constraint") or "",
                kind=kind,  # type: ignore[arg-type]
            )
        )
    return result
