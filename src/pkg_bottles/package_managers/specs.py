"""Requirement and version specifier parsing."""

import re
from pathlib import Path
from urllib.parse import unquote, urlsplit

from pkg_bottles.logging import get_logger
from pkg_bottles.types import Requirement, RequirementsFile, VersionSpec

logger = get_logger(__name__)

VCS_PREFIXES = ("git+", "hg+", "svn+", "bzr+")
URL_PREFIXES = ("http://", "https://", "file://")
ARCHIVE_SUFFIXES = (".whl", ".tar.gz", ".tar.bz2", ".tgz", ".zip", ".egg")

VCS_FALLBACK_NAME = "vcs-package"
URL_FALLBACK_NAME = "url-package"
LOCAL_FALLBACK_NAME = "local-package"

OPERATOR_CHARS = "<>=!~"

_INLINE_COMMENT = re.compile(r"\s+#.*$")
_EGG = re.compile(r"[#&]egg=([^&\s#]+)")
_EXTRAS = re.compile(r"^([^\[]+)\[([^\]]*)\](.*)$")
_EDITABLE = re.compile(r"^(?:-e|--editable)(?:\s+|=)")
# per-requirement options such as --hash or --config-settings
_LINE_OPTIONS = re.compile(r"\s+--[A-Za-z].*$")
_HASH = re.compile(r"--hash(?:\s+|=)(\S+)")
_OPTION = re.compile(
    r"^(-r|--requirement|-c|--constraint|-i|--index-url|--extra-index-url)(?:\s+|=)(.+)$"
)


def normalize_package_name(name: str) -> str:
    """PEP 503 normalization: lower case, separators collapsed to ``-``."""
    return re.sub(r"[-_.]+", "-", name.strip()).lower()


def is_vcs(spec: str) -> bool:
    return spec.startswith(VCS_PREFIXES)


def is_url(spec: str) -> bool:
    return spec.startswith(URL_PREFIXES)


def is_local_path(spec: str) -> bool:
    return spec.startswith((".", "/", "~")) or bool(re.match(r"^[A-Za-z]:[\\/]", spec))


def _egg_name(spec: str) -> str | None:
    match = _EGG.search(spec)
    return normalize_package_name(match.group(1)) if match else None


def vcs_name(url: str) -> str:
    if egg := _egg_name(url):
        return egg

    path = urlsplit(url.split("+", 1)[1]).path
    segment = path.rstrip("/").rsplit("/", 1)[-1]
    segment = segment.split("@", 1)[0].removesuffix(".git")
    if segment:
        return normalize_package_name(segment)

    logger.warning({"event": "vcs_name_fallback", "url": url})
    return VCS_FALLBACK_NAME


def url_name(url: str) -> str:
    if egg := _egg_name(url):
        return egg

    filename = unquote(urlsplit(url).path.rstrip("/").rsplit("/", 1)[-1])
    stem = filename
    for suffix in ARCHIVE_SUFFIXES:
        if stem.endswith(suffix):
            stem = stem.removesuffix(suffix)
            break

    # wheel and sdist names are "<name>-<version>..."
    if "-" in stem:
        stem = stem.split("-", 1)[0]

    if stem and stem != filename:
        return normalize_package_name(stem)

    logger.warning({"event": "url_name_fallback", "url": url})
    return URL_FALLBACK_NAME


def local_name(path: str) -> str:
    path = _EXTRAS.sub(r"\1\3", path)
    basename = re.split(r"[\\/]", path.rstrip("/\\"))[-1]
    if basename and basename not in (".", "..", "~"):
        return normalize_package_name(basename)

    logger.warning({"event": "local_name_fallback", "path": path})
    return LOCAL_FALLBACK_NAME


def parse_version_spec(spec: str) -> VersionSpec:
    """Split ``spec`` into a normalized name and its version constraint.

    ``"pkg[extra]>=1.0; python_version>'3.8'"`` gives name ``pkg`` and
    constraint ``>=1.0``. Specs without an operator get version ``*``.
    """
    spec = spec.split(";", 1)[0].strip()

    if is_vcs(spec):
        return VersionSpec(name=vcs_name(spec), version="*")
    if is_url(spec):
        return VersionSpec(name=url_name(spec), version="*")

    if " @ " in spec:
        spec = spec.split(" @ ", 1)[0]

    spec = _EXTRAS.sub(r"\1\3", spec)

    index = next((i for i, char in enumerate(spec) if char in OPERATOR_CHARS), None)
    if index is None:
        return VersionSpec(name=normalize_package_name(spec), version="*")

    constraint = spec[index:].strip()
    return VersionSpec(
        name=normalize_package_name(spec[:index]),
        version=constraint,
        constraint=constraint,
    )


def parse_requirement(line: str) -> Requirement | None:
    """Parse one requirements line; None only for blanks and comments."""
    original = line.strip()
    if not original or original.startswith("#"):
        return None

    # "#egg=" has no whitespace before it and survives
    line = _INLINE_COMMENT.sub("", original).strip()
    if not line:
        return None

    editable = False
    if match := _EDITABLE.match(line):
        editable = True
        line = line[match.end():].strip()

    hashes: list[str] = []
    if options := _LINE_OPTIONS.search(line):
        hashes = _HASH.findall(options.group(0))
        line = line[: options.start()].strip()

    if is_vcs(line):
        return Requirement(
            name=vcs_name(line), editable=editable, url=line, hashes=hashes, original_line=original
        )

    if is_url(line):
        return Requirement(
            name=url_name(line), editable=editable, url=line, hashes=hashes, original_line=original
        )

    if is_local_path(line):
        return Requirement(
            name=local_name(line), editable=editable, hashes=hashes, original_line=original
        )

    markers = None
    if ";" in line:
        line, markers = (part.strip() for part in line.split(";", 1))

    url = None
    if " @ " in line:
        line, url = (part.strip() for part in line.split(" @ ", 1))

    extras: list[str] = []
    if match := _EXTRAS.match(line):
        extras = [extra.strip() for extra in match.group(2).split(",") if extra.strip()]
        line = match.group(1) + match.group(3)

    spec = parse_version_spec(line)
    return Requirement(
        name=spec.name,
        version=spec.constraint or spec.version,
        editable=editable,
        url=url,
        markers=markers or None,
        extras=extras,
        hashes=hashes,
        original_line=original,
    )


def _logical_lines(text: str) -> list[str]:
    lines: list[str] = []
    pending = ""
    for raw in text.splitlines():
        if raw.rstrip().endswith("\\"):
            pending += raw.rstrip()[:-1] + " "
            continue
        lines.append(pending + raw)
        pending = ""
    if pending:
        lines.append(pending)
    return lines


def parse_requirements_file(path: Path, _seen: set[Path] | None = None) -> RequirementsFile:
    """Parse a pip requirements file, following ``-r`` and ``-c`` includes."""
    path = Path(path).resolve()
    seen = _seen if _seen is not None else set()
    seen.add(path)

    requirements: list[Requirement] = []
    constraints: list[Requirement] = []
    index_urls: list[str] = []

    for line in _logical_lines(path.read_text()):
        line = line.strip()
        if not line or line.startswith("#"):
            continue

        if option := _OPTION.match(line):
            flag, value = option.group(1), _INLINE_COMMENT.sub("", option.group(2)).strip()

            match flag:
                case "-i" | "--index-url" | "--extra-index-url":
                    index_urls.append(value)
                case _:
                    included = (path.parent / value).resolve()
                    if included in seen:
                        logger.warning({"event": "requirements_cycle", "file": str(included)})
                        continue
                    if not included.is_file():
                        logger.warning(
                            {"event": "requirements_include_missing", "file": str(included), "from": str(path)}
                        )
                        continue

                    nested = parse_requirements_file(included, seen)
                    index_urls.extend(nested.index_urls)
                    if flag in ("-c", "--constraint"):
                        constraints.extend(nested.requirements + nested.constraints)
                    else:
                        requirements.extend(nested.requirements)
                        constraints.extend(nested.constraints)
            continue

        if line.startswith("-") and not _EDITABLE.match(line):
            continue

        if requirement := parse_requirement(line):
            requirements.append(requirement)

    return RequirementsFile(requirements=requirements, constraints=constraints, index_urls=index_urls)
