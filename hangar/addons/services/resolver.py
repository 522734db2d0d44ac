from __future__ import annotations

import logging
import os
import shutil
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Generic, Iterable, List, Optional, Sequence, TypeVar, Union

from ..domain.errors import PackageNotFoundError
from ..domain.models import InstallUnit

logger = logging.getLogger("hangar.engine.resolver")

# Archive layouts seen in the wild:
# - /<package>/manifest.json
# - /<wrapper>/<package>/manifest.json
# - /Community/<package>/manifest.json
# - /<wrapper>/Community/<package>/manifest.json
# - /<versioned-wrapper>/<package>/<inner>/manifest.json

MANIFEST_MARKER = "manifest.json"
CONTAINER_DIR = "Community"
SKIP_NAMES = frozenset({"node_modules", "__macosx", ".git", ".svn", ".hg"})

AUTO_DETECT_MAX_DEPTH = 6
MARKER_SEARCH_DEPTH = 3
MAX_DIRS_VISITED = 3_000

Log = Union[logging.Logger, logging.LoggerAdapter]
N = TypeVar("N")


def default_case_insensitive() -> bool:
    return os.name == "nt" or sys.platform == "darwin"


# ----------------------------
# Bounded traversal
# ----------------------------

@dataclass
class WalkState(Generic[N]):
    """
    Accumulator for bounded_walk. The walk examines at most `max_visits`
    nodes (root excluded) and never goes deeper than `max_depth` levels
    below the root, so it always terminates.
    """

    max_depth: int
    max_visits: int
    visited: int = 0
    capped: bool = False
    hits: List[N] = field(default_factory=list)


def bounded_walk(
    root: N,
    children: Callable[[N], Iterable[N]],
    is_hit: Callable[[N], bool],
    *,
    max_depth: int,
    max_visits: int,
    include_root: bool = False,
    stop_at_first: bool = False,
) -> WalkState[N]:
    """
    Depth-first, order-preserving, iterative walk.

    A hit is recorded and not descended into. Nodes at depth == max_depth are
    examined but not expanded.
    """
    state: WalkState[N] = WalkState(max_depth=max_depth, max_visits=max_visits)

    if include_root and is_hit(root):
        state.hits.append(root)
        return state
    if max_depth < 1:
        return state

    stack: list[tuple[N, int]] = [(c, 1) for c in reversed(list(children(root)))]
    while stack:
        node, depth = stack.pop()

        state.visited += 1
        if state.visited > max_visits:
            state.capped = True
            break

        if is_hit(node):
            state.hits.append(node)
            if stop_at_first:
                break
            continue

        if depth < max_depth:
            stack.extend((c, depth + 1) for c in reversed(list(children(node))))

    return state


# ----------------------------
# Filesystem helpers
# ----------------------------

def _is_skipped(name: str) -> bool:
    return name.startswith(".") or name.lower() in SKIP_NAMES


def list_dirs(path: Path) -> List[Path]:
    try:
        return sorted((p for p in path.iterdir() if p.is_dir()), key=lambda p: p.name)
    except OSError:
        return []


def walkable_dirs(path: Path) -> List[Path]:
    return [p for p in list_dirs(path) if not _is_skipped(p.name)]


def has_marker(path: Path, marker: str = MANIFEST_MARKER) -> bool:
    return (path / marker).is_file()


def has_marker_any_case(path: Path, marker: str = MANIFEST_MARKER) -> bool:
    want = marker.lower()
    try:
        return any(p.is_file() and p.name.lower() == want for p in path.iterdir())
    except OSError:
        return False


def find_marker_dir(
    root: Path,
    *,
    marker: str = MANIFEST_MARKER,
    max_depth: int = MARKER_SEARCH_DEPTH,
    max_visits: int = MAX_DIRS_VISITED,
) -> Optional[Path]:
    """First directory at or below `root` (depth <= max_depth) holding the marker file."""
    state = bounded_walk(
        root,
        walkable_dirs,
        lambda p: has_marker_any_case(p, marker),
        max_depth=max_depth,
        max_visits=max_visits,
        include_root=True,
        stop_at_first=True,
    )
    return state.hits[0] if state.hits else None


@dataclass
class PackageScan:
    root: Path
    packages: List[Path]
    dirs_visited: int
    capped: bool


def scan_for_packages(
    root: Path,
    *,
    marker: str = MANIFEST_MARKER,
    max_depth: int = AUTO_DETECT_MAX_DEPTH,
    max_visits: int = MAX_DIRS_VISITED,
) -> PackageScan:
    state = bounded_walk(
        root,
        walkable_dirs,
        lambda p: has_marker(p, marker),
        max_depth=max_depth,
        max_visits=max_visits,
    )
    return PackageScan(root=root, packages=state.hits, dirs_visited=state.visited, capped=state.capped)


def dump_tree(root: Path, log: Log, *, max_depth: int = 3, max_entries: int = 50) -> None:
    """High-signal listing of an extracted tree for diagnosing catalog entries."""
    log.info("extracted tree:")
    stack: list[tuple[Path, int, str]] = [(root, 0, "")]
    while stack:
        current, depth, prefix = stack.pop()
        try:
            entries = sorted(current.iterdir(), key=lambda p: p.name)
        except OSError:
            continue
        dirs = [e for e in entries if e.is_dir()]
        files = [e for e in entries if e.is_file()]
        label = "/" if depth == 0 else f"{current.name}/"
        log.info("%s%s (dirs: %d files: %d)", prefix, label, len(dirs), len(files))
        for f in files[:max_entries]:
            log.info("%s  %s", prefix, f.name)
        if len(entries) > max_entries:
            log.info("%s  … (%d more entries)", prefix, len(entries) - max_entries)
        if depth < max_depth:
            for d in reversed(dirs[:max_entries]):
                stack.append((d, depth + 1, prefix + "  "))


def _describe(path: Path) -> str:
    return f"{path.name} ({path})"


# ----------------------------
# Resolver
# ----------------------------

class PackageResolver:
    """
    Turns an extracted archive tree into install units.

    strict (default): every unit must contain the manifest marker file.
    permissive: only when the catalog entry allows raw installs; units are
    taken by folder name, or the whole archive is bundled under the addon id.
    """

    def __init__(
        self,
        *,
        marker: str = MANIFEST_MARKER,
        container_dir: str = CONTAINER_DIR,
        case_insensitive: Optional[bool] = None,
        max_depth: int = AUTO_DETECT_MAX_DEPTH,
        marker_search_depth: int = MARKER_SEARCH_DEPTH,
        max_visits: int = MAX_DIRS_VISITED,
        log: Optional[Log] = None,
    ):
        self.marker = marker
        self.container_dir = container_dir
        self.case_insensitive = default_case_insensitive() if case_insensitive is None else case_insensitive
        self.max_depth = max_depth
        self.marker_search_depth = marker_search_depth
        self.max_visits = max_visits
        self.log: Log = log or logger

    def resolve(
        self,
        extract_dir: Path,
        *,
        addon_id: str,
        expected_folders: Sequence[str] = (),
        permissive: bool = False,
        work_dir: Optional[Path] = None,
    ) -> List[InstallUnit]:
        expected = [f for f in expected_folders if f]
        self.log.info(
            "resolving packages: permissive=%s expected=%s", permissive, ",".join(expected) or "(auto)"
        )
        if permissive:
            units = self.resolve_permissive(
                extract_dir,
                addon_id=addon_id,
                expected_folders=expected,
                work_dir=work_dir or extract_dir.parent,
            )
        else:
            units = self.resolve_strict(extract_dir, expected)
        self.log.info("package folders: %s", ", ".join(u.folder_name for u in units))
        return units

    # ---- candidate roots ----

    def build_candidate_roots(self, extract_dir: Path) -> List[Path]:
        """
        In order: the extraction root, its sole child dir (wrapper), its
        container dir, the wrapper's container dir. De-duplicated.
        """
        roots: List[Path] = [extract_dir]

        top = list_dirs(extract_dir)
        wrapper: Optional[Path] = top[0] if len(top) == 1 else None
        if wrapper is not None:
            roots.append(wrapper)

        container = self._match_child(extract_dir, self.container_dir, top)
        if container is not None:
            roots.append(container)

        if wrapper is not None:
            inner = self._match_child(wrapper, self.container_dir, list_dirs(wrapper))
            if inner is not None:
                roots.append(inner)

        seen: set[str] = set()
        out: List[Path] = []
        for r in roots:
            k = str(r).lower()
            if k in seen:
                continue
            seen.add(k)
            out.append(r)
        return out

    def _match_child(self, parent: Path, name: str, dirs: Optional[List[Path]] = None) -> Optional[Path]:
        dirs = list_dirs(parent) if dirs is None else dirs
        for d in dirs:
            if d.name == name:
                return d
        if self.case_insensitive:
            for d in dirs:
                if d.name.lower() == name.lower():
                    return d
        return None

    def _direct_path(self, root: Path, name: str) -> Optional[Path]:
        if root.name.lower() == name.lower():
            return root
        return self._match_child(root, name)

    # ---- strict ----

    def _resolve_at(self, path: Optional[Path]) -> Optional[Path]:
        if path is None or not path.is_dir():
            return None
        if has_marker(path, self.marker):
            return path
        found = find_marker_dir(
            path,
            marker=self.marker,
            max_depth=self.marker_search_depth,
            max_visits=self.max_visits,
        )
        if found is not None:
            self.log.info("%s found at %s, using package root %s", self.marker, found / self.marker, found)
        return found

    def _find_in_root(self, root: Path, name: str) -> Optional[Path]:
        resolved = self._resolve_at(self._direct_path(root, name))
        if resolved is not None:
            return resolved
        # one wrapper level: <root>/<wrapper>/<name>
        for w in list_dirs(root):
            resolved = self._resolve_at(self._match_child(w, name))
            if resolved is not None:
                return resolved
        return None

    def resolve_strict(self, extract_dir: Path, expected_folders: Sequence[str]) -> List[InstallUnit]:
        roots = self.build_candidate_roots(extract_dir)
        self.log.debug("candidate roots: %s", [str(r) for r in roots])

        if expected_folders:
            for root in roots:
                found: List[InstallUnit] = []
                for name in expected_folders:
                    src = self._find_in_root(root, name)
                    if src is not None:
                        self.log.debug("found expected folder %r at %s", name, src)
                        found.append(InstallUnit(folder_name=name, source_path=src))
                if len(found) == len(expected_folders):
                    self.log.info("detected package root: %s", root)
                    return found
            self.log.info(
                "expected folder(s) missing; attempting auto-detection (maxDepth=%d)", self.max_depth
            )

        return self._auto_detect(extract_dir, roots, list(expected_folders))

    def _auto_detect(self, extract_dir: Path, roots: List[Path], expected: List[str]) -> List[InstallUnit]:
        distinct_sets: List[List[Path]] = []
        seen_sets: set[frozenset[str]] = set()
        detected_all: dict[str, Path] = {}

        for root in roots:
            scan = scan_for_packages(
                root, marker=self.marker, max_depth=self.max_depth, max_visits=self.max_visits
            )
            self.log.info(
                "auto-detect root=%s hits=%d dirsVisited=%d%s",
                root,
                len(scan.packages),
                scan.dirs_visited,
                " (capped)" if scan.capped else "",
            )
            for p in scan.packages:
                detected_all.setdefault(str(p).lower(), p)
            if not scan.packages:
                continue
            key = frozenset(str(p).lower() for p in scan.packages)
            if key not in seen_sets:
                seen_sets.add(key)
                distinct_sets.append(scan.packages)

        detected = list(detected_all.values())
        units: Optional[List[InstallUnit]] = None
        if len(distinct_sets) == 1:
            units = self._units_from_detection(distinct_sets[0], expected)

        if units is not None:
            self.log.info("auto-detected packages: %s", ", ".join(u.folder_name for u in units))
            return units

        dump_tree(extract_dir, self.log)
        detected_desc = [_describe(p) for p in detected]
        wanted = ", ".join(expected) if expected else "(auto-detect)"
        raise PackageNotFoundError(
            f"Expected folder(s) not found: [{wanted}]. "
            f"Candidate roots: [{', '.join(str(r) for r in roots)}]. "
            f"Detected packages: [{', '.join(p.name for p in detected) or 'none'}]. "
            f"Set packageFolderNames to one of: {', '.join(detected_desc) or '(none found)'} "
            f"or fix the ZIP structure.",
            expected_folders=expected,
            candidate_roots=[str(r) for r in roots],
            detected=detected_desc,
        )

    def _units_from_detection(self, packages: List[Path], expected: List[str]) -> Optional[List[InstallUnit]]:
        if expected:
            if len(packages) != len(expected):
                return None
            if len(expected) == 1:
                return [InstallUnit(folder_name=expected[0], source_path=packages[0])]
            by_name = {p.name.lower(): p for p in packages}
            if len(by_name) != len(packages):
                return None
            units = []
            for name in expected:
                src = by_name.get(name.lower())
                if src is None:
                    return None
                units.append(InstallUnit(folder_name=name, source_path=src))
            return units

        names = [p.name.lower() for p in packages]
        if len(set(names)) != len(names):
            return None
        return [InstallUnit(folder_name=p.name, source_path=p) for p in packages]

    # ---- permissive ----

    def _is_under(self, base: Path, p: Path) -> bool:
        b = base.resolve()
        r = p.resolve()
        return r == b or b in r.parents

    def resolve_permissive(
        self,
        extract_dir: Path,
        *,
        addon_id: str,
        expected_folders: Sequence[str],
        work_dir: Path,
    ) -> List[InstallUnit]:
        if expected_folders:
            roots = self.build_candidate_roots(extract_dir)
            self.log.info("raw install: candidate roots: %s", [str(r) for r in roots])
            units: List[InstallUnit] = []
            for name in expected_folders:
                found = self._find_folder_anywhere(roots, name)
                if found is None or not self._is_under(extract_dir, found):
                    dump_tree(extract_dir, self.log)
                    raise PackageNotFoundError(
                        f"RAW MODE: could not locate folder '{name}'. "
                        f"Set packageFolderNames to match the ZIP folder(s), or fix the ZIP structure.",
                        expected_folders=[name],
                        candidate_roots=[str(r) for r in roots],
                        detected=[_describe(d) for d in list_dirs(extract_dir)],
                    )
                units.append(InstallUnit(folder_name=name, source_path=found))
            return units

        try:
            entries = sorted(extract_dir.iterdir(), key=lambda p: p.name)
        except OSError:
            entries = []
        dirs = [e for e in entries if e.is_dir()]
        files = [e for e in entries if e.is_file()]

        if not entries:
            raise PackageNotFoundError(
                f"Archive for {addon_id} is empty; nothing to install.",
                candidate_roots=[str(extract_dir)],
            )

        if len(dirs) == 1 and not files:
            return [InstallUnit(folder_name=dirs[0].name, source_path=dirs[0])]

        # Bundle everything into <install path>/<addon id>/
        raw_root = work_dir / "rawroot"
        raw_root.mkdir(parents=True, exist_ok=True)
        copied = 0
        for ent in entries:
            name = ent.name
            if not name or ".." in name or "/" in name or "\\" in name:
                self.log.warning("raw install: skipping unsafe entry %r", name)
                continue
            if ent.is_dir():
                shutil.copytree(ent, raw_root / name)
            else:
                shutil.copy2(ent, raw_root / name)
            copied += 1

        if copied == 0:
            raise PackageNotFoundError(
                f"Archive for {addon_id} has no installable entries.",
                candidate_roots=[str(extract_dir)],
            )
        self.log.info("raw install: bundled %d top-level entries under %s", copied, addon_id)
        return [InstallUnit(folder_name=addon_id, source_path=raw_root)]

    def _find_folder_anywhere(self, roots: List[Path], name: str) -> Optional[Path]:
        for root in roots:
            direct = self._direct_path(root, name)
            if direct is not None and direct.is_dir():
                return direct
            for w in list_dirs(root):
                candidate = self._match_child(w, name)
                if candidate is not None and candidate.is_dir():
                    return candidate
        return None
