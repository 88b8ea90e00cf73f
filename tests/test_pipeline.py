import csv
import io

import numpy as np
import pytest

from annotation import generate_colors, render_cluster_overlay
from batch import process_batch
from cli import main
from config import ClusteringSettings
from errors import LabelMaskError
from image_io import iter_masks, load_label_mask, save_label_mask
from processing import process_mask, summarize_result
from progress import ProgressRenderer
from random_source import NumpyRandomSource


@pytest.fixture
def masks_dir(tmp_path, two_group_mask, one_group_mask):
    directory = tmp_path / "masks"
    directory.mkdir()
    np.save(directory / "pair.npy", two_group_mask)
    save_label_mask(directory / "single.png", one_group_mask)
    (directory / "notes.txt").write_text("ignored", encoding="utf-8")
    return directory


def read_rows(path):
    with path.open(newline="", encoding="utf-8") as f:
        return list(csv.reader(f))


def test_iter_masks_filters_and_sorts(masks_dir):
    assert [p.name for p in iter_masks(masks_dir)] == ["pair.npy", "single.png"]


def test_iter_masks_recursive(masks_dir, one_group_mask):
    nested = masks_dir / "nested"
    nested.mkdir()
    np.save(nested / "deep.npy", one_group_mask)
    names = [p.name for p in iter_masks(masks_dir, recursive=True)]
    assert "deep.npy" in names and len(names) == 3


def test_png_masks_keep_16_bit_labels(tmp_path):
    mask = np.zeros((10, 10), dtype=np.int32)
    mask[2:4, 2:4] = 1000
    written = save_label_mask(tmp_path / "mask.png", mask)
    assert written.suffix == ".png"
    np.testing.assert_array_equal(load_label_mask(written), mask)


def test_3d_masks_are_saved_as_npy(tmp_path):
    mask = np.zeros((2, 5, 5), dtype=np.int32)
    mask[1, 2, 2] = 3
    written = save_label_mask(tmp_path / "stack.png", mask)
    assert written.suffix == ".npy"
    np.testing.assert_array_equal(load_label_mask(written), mask)


def test_float_npy_masks_are_rejected(tmp_path):
    np.save(tmp_path / "bad.npy", np.ones((4, 4), dtype=float))
    with pytest.raises(LabelMaskError):
        load_label_mask(tmp_path / "bad.npy")


def test_overlay_matches_mask_size(two_group_mask):
    overlay = render_cluster_overlay(two_group_mask, two_group_mask)
    assert overlay.size == (100, 100)
    assert overlay.mode == "RGB"
    assert overlay.getpixel((0, 0)) == (0, 0, 0)


def test_palette_has_black_background():
    colors = generate_colors(3)
    assert colors.shape == (4, 3)
    assert tuple(colors[0]) == (0, 0, 0)
    assert len({tuple(c) for c in colors[1:]}) == 3


def test_process_mask_labels_binary_masks(tmp_path, two_group_mask):
    np.save(tmp_path / "binary.npy", (two_group_mask > 0).astype(np.uint8))
    settings = ClusteringSettings(label_regions=True)
    result = process_mask(tmp_path / "binary.npy", settings, NumpyRandomSource(1))
    assert len(result.objects) == 10
    assert result.cluster_count == 2
    record = summarize_result(tmp_path / "binary.npy", result)
    assert record["region_count"] == 10
    assert record["cluster_sizes"] == {1: 5, 2: 5}


def test_process_batch_writes_outputs(masks_dir, tmp_path):
    output_dir = tmp_path / "out"
    summary = process_batch(masks_dir, output_dir, ClusteringSettings(seed=7), max_workers=1)

    assert summary["processed"] == 2
    assert summary["succeeded"] == 2
    assert summary["failed"] == 0
    assert [d["cluster_count"] for d in summary["details"]] == [2, 1]
    assert (output_dir / "Clusters" / "pair_clusters.png").exists()
    assert (output_dir / "Overlays" / "single_overlay.png").exists()

    clusters = load_label_mask(output_dir / "Clusters" / "pair_clusters.png")
    assert clusters.max() == 2

    assignments = read_rows(output_dir / "assignments.csv")
    assert assignments[0][:3] == ["Filename", "Region", "Cluster"]
    assert len(assignments) == 1 + 10 + 5

    summary_rows = read_rows(output_dir / "summary.csv")
    stats = {row[0]: row[1] for row in summary_rows if len(row) == 2}
    assert stats["Total_Masks"] == "2"
    assert stats["Total_Clusters"] == "3"


def test_process_batch_records_failures_and_continues(masks_dir, tmp_path):
    np.save(masks_dir / "broken.npy", -np.ones((5, 5), dtype=np.int32))
    summary = process_batch(masks_dir, tmp_path / "out", ClusteringSettings(seed=1), max_workers=1, save_overlays=False)
    assert summary["processed"] == 3
    assert summary["failed"] == 1
    assert summary["errors"][0]["filename"] == "broken.npy"
    assert not (tmp_path / "out" / "Overlays").exists()


def test_process_batch_is_reproducible(masks_dir, tmp_path):
    settings = ClusteringSettings(seed=5)
    first = process_batch(masks_dir, tmp_path / "a", settings, max_workers=1, save_overlays=False)
    second = process_batch(masks_dir, tmp_path / "b", settings, max_workers=1, save_overlays=False)
    assert [d["regions"] for d in first["details"]] == [d["regions"] for d in second["details"]]


def test_process_batch_without_masks_raises(tmp_path):
    empty = tmp_path / "empty"
    empty.mkdir()
    with pytest.raises(FileNotFoundError):
        process_batch(empty, tmp_path / "out", ClusteringSettings())


def test_cli_runs_end_to_end(masks_dir, tmp_path):
    output_dir = tmp_path / "cli_out"
    saved = tmp_path / "effective.json"
    code = main(
        [
            "--masks-dir", str(masks_dir),
            "--output-dir", str(output_dir),
            "--seed", "3",
            "--max-clusters", "8",
            "--workers", "1",
            "--save-config", str(saved),
            "--log-file", str(tmp_path / "run.log"),
        ]
    )
    assert code == 0
    assert (output_dir / "summary.csv").exists()
    assert '"max_clusters": 8' in saved.read_text(encoding="utf-8")
    assert (tmp_path / "run.log").exists()


def test_cli_reports_missing_masks(tmp_path):
    assert main(["--masks-dir", str(tmp_path / "nowhere"), "--output-dir", str(tmp_path / "out")]) == 1


def test_cli_reports_bad_config(tmp_path, masks_dir):
    config = tmp_path / "bad.json"
    config.write_text("{broken", encoding="utf-8")
    assert main(["--masks-dir", str(masks_dir), "--config", str(config)]) == 1


def test_progress_renderer_counts_batch_outcomes(masks_dir, tmp_path):
    np.save(masks_dir / "broken.npy", -np.ones((5, 5), dtype=np.int32))
    stream = io.StringIO()
    renderer = ProgressRenderer(stream=stream, width=10)
    process_batch(
        masks_dir, tmp_path / "out", ClusteringSettings(seed=7), max_workers=1,
        save_overlays=False, progress_renderer=renderer,
    )
    assert (renderer.succeeded, renderer.failed, renderer.clusters) == (2, 1, 3)
    last_line = stream.getvalue().rstrip("\n").split("\r")[-1]
    assert last_line.startswith("[##########] 3/3 ok:2 failed:1 clusters:3")
    assert stream.getvalue().endswith("\n")
