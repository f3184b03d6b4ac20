import json
import logging
import os
import shutil
import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import pytest

from amp_orchestra.core.locks import FileLock, merge_lock_path
from amp_orchestra.core.toolbox import (
    LimitExceeded,
    ToolboxError,
    ToolboxLimits,
    merge_hash,
    merge_toolboxes,
    prune_toolbox_cache,
    split_toolbox_paths,
    toolboxes_enabled,
)


def _entries(merged):
    return {entry.name: entry for entry in merged.manifest.entries}


def _leftovers(runtime_root: Path):
    return sorted(p.name for p in runtime_root.iterdir() if p.name != ".locks")


def _age(runtime_root: Path, merged, stamp: float) -> None:
    os.utime(merged.root_path / "manifest.json", (stamp, stamp))
    os.utime(merge_lock_path(runtime_root, merged.hash), (stamp, stamp))


def test_later_source_wins_collisions(toolbox_root, runtime_root):
    tools_a = toolbox_root("toolsA", {"lint": "a-lint", "fmt": "a-fmt"})
    tools_b = toolbox_root("toolsB", {"lint": "b-lint"})

    merged = merge_toolboxes([tools_a, tools_b], runtime_root=runtime_root)

    assert (merged.bin_path / "lint").read_text(encoding="utf-8") == "b-lint"
    assert (merged.bin_path / "fmt").read_text(encoding="utf-8") == "a-fmt"
    entries = _entries(merged)
    assert entries["lint"].source_index == 1
    assert entries["fmt"].source_index == 0
    assert merged.manifest.files_count == 3
    assert merged.root_path == runtime_root / merged.hash
    assert not merged.cache_hit


def test_hash_is_deterministic_and_order_sensitive(toolbox_root):
    tools_a = toolbox_root("toolsA", {"lint": "a"})
    tools_b = toolbox_root("toolsB", {"lint": "b"})

    assert merge_hash([tools_a, tools_b]) == merge_hash([str(tools_a), str(tools_b)])
    assert merge_hash([tools_a, tools_b]) != merge_hash([tools_b, tools_a])
    assert len(merge_hash([tools_a])) == 16


def test_second_merge_is_a_cache_hit(toolbox_root, runtime_root):
    tools_a = toolbox_root("toolsA", {"lint": "a"})

    first = merge_toolboxes([tools_a], runtime_root=runtime_root)
    manifest_before = (first.root_path / "manifest.json").read_text(encoding="utf-8")
    second = merge_toolboxes([tools_a], runtime_root=runtime_root)

    assert second.cache_hit
    assert second.hash == first.hash
    assert (second.root_path / "manifest.json").read_text(encoding="utf-8") == manifest_before


def test_changed_source_rebuilds_merge(toolbox_root, runtime_root):
    tools_a = toolbox_root("toolsA", {"lint": "a"})
    first = merge_toolboxes([tools_a], runtime_root=runtime_root)

    (tools_a / "bin" / "fmt").write_text("new tool", encoding="utf-8")
    second = merge_toolboxes([tools_a], runtime_root=runtime_root)

    assert not second.cache_hit
    assert second.hash == first.hash
    assert set(_entries(second)) == {"lint", "fmt"}
    assert (second.bin_path / "fmt").exists()


def test_missing_source_is_skipped(toolbox_root, runtime_root, tmp_path, caplog):
    tools_a = toolbox_root("toolsA", {"lint": "a"})
    missing = tmp_path / "does-not-exist"

    with caplog.at_level(logging.WARNING, logger="amp_orchestra"):
        merged = merge_toolboxes([missing, tools_a], runtime_root=runtime_root)

    assert merged.manifest.skipped == [str(missing.resolve())]
    assert (merged.bin_path / "lint").exists()
    assert "does not exist" in caplog.text


def test_source_without_bin_dir_contributes_its_own_files(tmp_path, runtime_root):
    plain = tmp_path / "plain"
    plain.mkdir()
    (plain / "tool").write_text("t", encoding="utf-8")

    merged = merge_toolboxes([plain], runtime_root=runtime_root)
    assert (merged.bin_path / "tool").read_text(encoding="utf-8") == "t"


def test_nested_files_are_kept_relative(toolbox_root, runtime_root):
    tools_a = toolbox_root("toolsA", {"lib/helper.sh": "h"})
    merged = merge_toolboxes([tools_a], runtime_root=runtime_root)
    assert (merged.bin_path / "lib" / "helper.sh").read_text(encoding="utf-8") == "h"


def test_file_limit_is_all_or_nothing(toolbox_root, runtime_root):
    tools_a = toolbox_root("toolsA", {"one": "1", "two": "2", "three": "3"})

    with pytest.raises(LimitExceeded) as excinfo:
        merge_toolboxes(
            [tools_a], ToolboxLimits(max_files=2), runtime_root=runtime_root
        )

    assert excinfo.value.kind == "files"
    assert excinfo.value.limit == 2
    assert excinfo.value.attempted == 3
    assert _leftovers(runtime_root) == []


def test_byte_limit_counts_collisions(toolbox_root, runtime_root):
    tools_a = toolbox_root("toolsA", {"lint": "x" * 60})
    tools_b = toolbox_root("toolsB", {"lint": "y" * 60})

    with pytest.raises(LimitExceeded) as excinfo:
        merge_toolboxes(
            [tools_a, tools_b],
            ToolboxLimits(max_total_bytes=100),
            runtime_root=runtime_root,
        )

    assert excinfo.value.kind == "bytes"
    assert excinfo.value.attempted == 120
    assert "exceeds limit of 100 bytes" in str(excinfo.value)
    assert _leftovers(runtime_root) == []


def test_failed_link_strategies_fall_back(toolbox_root, runtime_root):
    tools_a = toolbox_root("toolsA", {"lint": "a"})

    def _refuse(src, dst):
        raise OSError("links not supported here")

    merged = merge_toolboxes(
        [tools_a],
        runtime_root=runtime_root,
        strategies=(("symlink", _refuse), ("hardlink", _refuse), ("copy", shutil.copy2)),
    )

    target = merged.bin_path / "lint"
    assert not target.is_symlink()
    assert target.read_text(encoding="utf-8") == "a"
    assert _entries(merged)["lint"].strategy == "copy"


def test_all_strategies_failing_raises(toolbox_root, runtime_root):
    tools_a = toolbox_root("toolsA", {"lint": "a"})

    def _refuse(src, dst):
        raise OSError("no")

    with pytest.raises(ToolboxError):
        merge_toolboxes(
            [tools_a], runtime_root=runtime_root, strategies=(("copy", _refuse),)
        )
    assert _leftovers(runtime_root) == []


def test_symlinks_escaping_the_source_are_skipped(toolbox_root, runtime_root, tmp_path):
    outside = tmp_path / "secret.txt"
    outside.write_text("secret", encoding="utf-8")
    tools_a = toolbox_root("toolsA", {"lint": "a"})
    os.symlink(outside, tools_a / "bin" / "escape")
    os.symlink(tools_a / "bin" / "lint", tools_a / "bin" / "lint-alias")

    merged = merge_toolboxes([tools_a], runtime_root=runtime_root)

    names = set(_entries(merged))
    assert "escape" not in names
    assert "lint-alias" in names


def test_bin_symlink_escaping_the_source_is_ignored(runtime_root, tmp_path, caplog):
    outside = tmp_path / "outside"
    outside.mkdir()
    (outside / "secret-tool").write_text("secret", encoding="utf-8")
    tools = tmp_path / "tb"
    tools.mkdir()
    (tools / "own-tool").write_text("own", encoding="utf-8")
    os.symlink(outside, tools / "bin")

    with caplog.at_level(logging.WARNING, logger="amp_orchestra"):
        merged = merge_toolboxes([tools], runtime_root=runtime_root)

    names = set(_entries(merged))
    assert "secret-tool" not in names
    assert "bin/secret-tool" not in names
    assert names == {"own-tool"}
    assert "escaping" in caplog.text


def test_bin_symlink_inside_the_source_is_followed(runtime_root, tmp_path):
    tools = tmp_path / "tb"
    real_bin = tools / "real-bin"
    real_bin.mkdir(parents=True)
    (real_bin / "lint").write_text("lint", encoding="utf-8")
    os.symlink(real_bin, tools / "bin")

    merged = merge_toolboxes([tools], runtime_root=runtime_root)

    assert set(_entries(merged)) == {"lint"}


def test_concurrent_merges_publish_one_complete_tree(toolbox_root, runtime_root):
    files = {f"tool-{idx}": str(idx) for idx in range(20)}
    tools_a = toolbox_root("toolsA", files)

    def _merge(_):
        return merge_toolboxes([tools_a], runtime_root=runtime_root)

    with ThreadPoolExecutor(max_workers=6) as pool:
        results = list(pool.map(_merge, range(6)))

    for merged in results:
        assert {p.name for p in merged.bin_path.iterdir()} == set(files)
    assert len({merged.hash for merged in results}) == 1
    assert sum(not merged.cache_hit for merged in results) == 1
    assert _leftovers(runtime_root) == [results[0].hash]


def test_empty_source_list_is_rejected(runtime_root):
    with pytest.raises(ToolboxError):
        merge_toolboxes([], runtime_root=runtime_root)


def test_manifest_is_written(toolbox_root, runtime_root):
    tools_a = toolbox_root("toolsA", {"lint": "abc"})
    merged = merge_toolboxes([tools_a], runtime_root=runtime_root)

    data = json.loads((merged.root_path / "manifest.json").read_text(encoding="utf-8"))
    assert data["hash"] == merged.hash
    assert data["sources"] == [str(tools_a.resolve())]
    assert data["bytes_total"] == 3


def test_prune_keeps_newest_entries(toolbox_root, runtime_root):
    tools_a = toolbox_root("toolsA", {"lint": "a"})
    tools_b = toolbox_root("toolsB", {"lint": "b"})
    old = merge_toolboxes([tools_a], runtime_root=runtime_root)
    new = merge_toolboxes([tools_b], runtime_root=runtime_root)
    _age(runtime_root, old, 1_000_000)
    _age(runtime_root, new, 2_000_000)

    removed = prune_toolbox_cache(runtime_root, max_entries=1, now=2_000_000)

    assert removed == [old.root_path]
    assert not old.root_path.exists()
    assert new.root_path.exists()


def test_prune_removes_expired_and_leftover_dirs(toolbox_root, runtime_root):
    tools_a = toolbox_root("toolsA", {"lint": "a"})
    merged = merge_toolboxes([tools_a], runtime_root=runtime_root)
    scratch = runtime_root / ".tmp-deadbeef-1234"
    scratch.mkdir()
    os.utime(scratch, (0, 0))
    _age(runtime_root, merged, 0)

    removed = prune_toolbox_cache(runtime_root, max_age_days=1, now=10 * 86400)

    assert set(removed) == {scratch, merged.root_path}


def test_prune_ages_merges_by_last_use(toolbox_root, runtime_root):
    tools_a = toolbox_root("toolsA", {"lint": "a"})
    merged = merge_toolboxes([tools_a], runtime_root=runtime_root)
    _age(runtime_root, merged, 0)

    again = merge_toolboxes([tools_a], runtime_root=runtime_root)
    assert again.cache_hit
    assert merge_lock_path(runtime_root, merged.hash).stat().st_mtime > 86400

    removed = prune_toolbox_cache(runtime_root, max_age_days=1, now=time.time())

    assert removed == []
    assert merged.root_path.exists()


def test_prune_skips_merges_in_use(toolbox_root, runtime_root):
    tools_a = toolbox_root("toolsA", {"lint": "a"})
    merged = merge_toolboxes([tools_a], runtime_root=runtime_root)

    with FileLock(merge_lock_path(runtime_root, merged.hash)):
        removed = prune_toolbox_cache(runtime_root, max_entries=0)

    assert removed == []
    assert merged.root_path.exists()


def test_split_toolbox_paths():
    assert split_toolbox_paths("/a:/b, /c") == ["/a", "/b", "/c"]
    assert split_toolbox_paths(r"C:\a;D:\b", platform="win32") == [r"C:\a", r"D:\b"]
    assert split_toolbox_paths(None) == []


@pytest.mark.parametrize(
    "value,expected", [(None, True), ("1", True), ("0", False), ("false", False)]
)
def test_toolboxes_enabled(value, expected):
    env = {} if value is None else {"AMP_ENABLE_TOOLBOXES": value}
    assert toolboxes_enabled(env) is expected
