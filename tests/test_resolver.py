from pathlib import Path

import pytest

from hangar.addons.domain.errors import PackageNotFoundError
from hangar.addons.services.resolver import (
    PackageResolver,
    bounded_walk,
    find_marker_dir,
    scan_for_packages,
)


def make_tree(root: Path, files) -> Path:
    for rel in files:
        p = root / rel
        if rel.endswith("/"):
            p.mkdir(parents=True, exist_ok=True)
        else:
            p.parent.mkdir(parents=True, exist_ok=True)
            p.write_text("{}" if p.name == "manifest.json" else "data")
    return root


@pytest.fixture
def resolver():
    return PackageResolver(case_insensitive=False)


class TestBoundedWalk:
    """Pure traversal over an in-memory tree: no filesystem needed."""

    TREE = {
        "root": ["a", "b"],
        "a": ["a1", "a2"],
        "a1": ["a11"],
        "b": ["b1"],
    }

    def children(self, n):
        return self.TREE.get(n, [])

    def test_order_and_hits(self):
        state = bounded_walk("root", self.children, lambda n: n in ("a2", "b1"), max_depth=5, max_visits=100)
        assert state.hits == ["a2", "b1"]
        assert not state.capped

    def test_depth_limit(self):
        state = bounded_walk("root", self.children, lambda n: n == "a11", max_depth=2, max_visits=100)
        assert state.hits == []

    def test_visit_budget_caps_the_walk(self):
        wide = {"root": [f"n{i}" for i in range(50)]}
        state = bounded_walk("root", lambda n: wide.get(n, []), lambda n: False, max_depth=3, max_visits=10)
        assert state.capped
        assert state.visited == 11

    def test_cycle_is_still_bounded(self):
        state = bounded_walk("x", lambda n: ["x"], lambda n: False, max_depth=1000, max_visits=25)
        assert state.capped

    def test_hit_is_not_descended(self):
        state = bounded_walk("root", self.children, lambda n: n in ("a", "a1"), max_depth=5, max_visits=100)
        assert state.hits == ["a"]


class TestMarkerSearch:
    def test_finds_nested_marker(self, tmp_path):
        make_tree(tmp_path, ["Pkg/inner/deeper/manifest.json"])
        assert find_marker_dir(tmp_path / "Pkg") == tmp_path / "Pkg" / "inner" / "deeper"

    def test_respects_depth(self, tmp_path):
        make_tree(tmp_path, ["Pkg/1/2/3/4/manifest.json"])
        assert find_marker_dir(tmp_path / "Pkg", max_depth=3) is None

    def test_scan_skips_noise_dirs(self, tmp_path):
        make_tree(tmp_path, ["node_modules/x/manifest.json", ".git/y/manifest.json", "Real/manifest.json"])
        scan = scan_for_packages(tmp_path)
        assert [p.name for p in scan.packages] == ["Real"]


class TestStrict:
    def test_wrapper_community_chain(self, tmp_path, resolver):
        make_tree(tmp_path, ["wrapper/Community/MyPackage/manifest.json", "wrapper/Community/MyPackage/layout.json"])

        units = resolver.resolve(tmp_path, addon_id="my", expected_folders=["MyPackage"])

        assert len(units) == 1
        assert units[0].folder_name == "MyPackage"
        assert units[0].source_path == tmp_path / "wrapper" / "Community" / "MyPackage"

    def test_candidate_roots_order(self, tmp_path, resolver):
        make_tree(tmp_path, ["wrapper/Community/MyPackage/manifest.json"])
        roots = resolver.build_candidate_roots(tmp_path)
        assert roots == [tmp_path, tmp_path / "wrapper", tmp_path / "wrapper" / "Community"]

    def test_direct_folder_at_root(self, tmp_path, resolver):
        make_tree(tmp_path, ["A/manifest.json", "B/manifest.json"])
        units = resolver.resolve(tmp_path, addon_id="x", expected_folders=["A", "B"])
        assert [(u.folder_name, u.source_path.name) for u in units] == [("A", "A"), ("B", "B")]

    def test_deep_marker_becomes_source(self, tmp_path, resolver):
        make_tree(tmp_path, ["Pkg/v1.2/Pkg/manifest.json"])
        units = resolver.resolve(tmp_path, addon_id="x", expected_folders=["Pkg"])
        assert units[0].folder_name == "Pkg"
        assert units[0].source_path == tmp_path / "Pkg" / "v1.2" / "Pkg"

    def test_case_insensitive_match(self, tmp_path):
        make_tree(tmp_path, ["mypackage/manifest.json"])
        units = PackageResolver(case_insensitive=True).resolve(tmp_path, addon_id="x", expected_folders=["MyPackage"])
        assert units[0].folder_name == "MyPackage"
        assert units[0].source_path.name == "mypackage"

    def test_missing_marker_falls_back_to_single_detection(self, tmp_path, resolver):
        make_tree(tmp_path, ["release/SomethingElse/manifest.json"])
        units = resolver.resolve(tmp_path, addon_id="x", expected_folders=["Wanted"])
        assert units[0].folder_name == "Wanted"
        assert units[0].source_path.name == "SomethingElse"

    def test_auto_detect_without_names(self, tmp_path, resolver):
        make_tree(tmp_path, ["bundle/One/manifest.json", "bundle/Two/manifest.json", "README.txt"])
        units = resolver.resolve(tmp_path, addon_id="x")
        assert sorted(u.folder_name for u in units) == ["One", "Two"]

    def test_ambiguous_detection_reports_everything(self, tmp_path, resolver):
        make_tree(tmp_path, ["a/Pkg/manifest.json", "b/Pkg/manifest.json"])
        with pytest.raises(PackageNotFoundError) as exc:
            resolver.resolve(tmp_path, addon_id="x")
        details = exc.value.details()
        assert str(tmp_path) in details["candidate_roots"]
        assert len(details["detected"]) == 2

    def test_nothing_found(self, tmp_path, resolver):
        make_tree(tmp_path, ["docs/readme.txt"])
        with pytest.raises(PackageNotFoundError) as exc:
            resolver.resolve(tmp_path, addon_id="x", expected_folders=["Pkg"])
        assert exc.value.expected_folders == ["Pkg"]
        assert exc.value.code == "package_not_found"


class TestPermissive:
    def test_three_loose_files_bundle_under_addon_id(self, tmp_path, resolver):
        extract = make_tree(tmp_path / "extract", ["a.txt", "b.txt", "c.dll"])
        units = resolver.resolve(extract, addon_id="my-addon", permissive=True, work_dir=tmp_path / "work")

        assert len(units) == 1
        assert units[0].folder_name == "my-addon"
        assert sorted(p.name for p in units[0].source_path.iterdir()) == ["a.txt", "b.txt", "c.dll"]

    def test_single_top_dir_is_the_unit(self, tmp_path, resolver):
        extract = make_tree(tmp_path / "extract", ["Livery/texture/t.dds"])
        units = resolver.resolve(extract, addon_id="x", permissive=True, work_dir=tmp_path / "work")
        assert [(u.folder_name, u.source_path) for u in units] == [("Livery", extract / "Livery")]

    def test_named_folder_without_marker(self, tmp_path, resolver):
        extract = make_tree(tmp_path / "extract", ["wrap/Livery/t.dds"])
        units = resolver.resolve(
            extract, addon_id="x", expected_folders=["Livery"], permissive=True, work_dir=tmp_path / "work"
        )
        assert units[0].source_path == extract / "wrap" / "Livery"

    def test_named_folder_missing(self, tmp_path, resolver):
        extract = make_tree(tmp_path / "extract", ["Other/t.dds"])
        with pytest.raises(PackageNotFoundError) as exc:
            resolver.resolve(
                extract, addon_id="x", expected_folders=["Livery"], permissive=True, work_dir=tmp_path / "work"
            )
        assert "Livery" in str(exc.value)

    def test_empty_archive_is_an_error(self, tmp_path, resolver):
        extract = tmp_path / "extract"
        extract.mkdir()
        with pytest.raises(PackageNotFoundError):
            resolver.resolve(extract, addon_id="x", permissive=True, work_dir=tmp_path / "work")
