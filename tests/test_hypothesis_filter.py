import pytest
import torch

from lpm.matching.hypotheses import (
    batch_beam_search,
    compact_beam,
    compute_s2s_logprob,
    filter_beam_by_length,
    path_length_range,
    uniform_lm_logprob,
)


def test_compact_beam_drops_empty_items():
    paths = [[1], [2, 3], [4], [5, 6], [7]]
    beam = compact_beam(paths, [2, 0, 3])
    assert beam.hypo_nums == [2, 3]
    assert beam.keep_idx == [0, 2]
    assert len(beam.paths) == 5
    assert beam.batch_size == 2
    assert not beam.is_empty


def test_compact_beam_all_empty():
    beam = compact_beam([], [0, 0])
    assert beam.is_empty
    assert beam.hypo_nums == []


def test_filter_by_length_keeps_counts_per_item():
    paths = [[1], [1, 2, 3], [1, 2, 3, 4, 5, 6, 7], [1, 2]]
    hypo_nums = [3, 1]
    # item 0 ref 4 -> keep lengths in [2, 6]; item 1 ref 10 -> length 2 < 5 dropped
    out_paths, out_nums = filter_beam_by_length(paths, hypo_nums, [4, 10], lower_ratio=0.5, upper_ratio=1.5)
    assert out_paths == [[1, 2, 3]]
    assert out_nums == [1, 0]


def test_filter_without_upper_bound():
    paths = [[1] * 50, [1]]
    out_paths, out_nums = filter_beam_by_length(paths, [2], [3], lower_ratio=0.5, upper_ratio=0.0)
    assert out_nums == [1]
    assert len(out_paths[0]) == 50


def test_filter_skips_items_without_reference():
    paths = [[1], [1, 2, 3, 4]]
    out_paths, out_nums = filter_beam_by_length(paths, [2], [0], lower_ratio=0.9, upper_ratio=1.1)
    assert out_nums == [2]
    assert out_paths == paths


def test_filter_rejects_mismatched_references():
    with pytest.raises(ValueError):
        filter_beam_by_length([[1]], [1], [1, 2])


class _FixedBeam:
    def __init__(self, paths, hypo_nums):
        self.paths = paths
        self.hypo_nums = hypo_nums
        self.rows = None

    def beam_search(self, output, eos, beam_size, max_len):
        return self.paths, self.hypo_nums

    def sequence_logprob(self, rows, paths):
        self.rows = rows
        return rows.sum(dim=(1, 2))


def test_batch_beam_search_validates_counts():
    crit = _FixedBeam([[1], [2]], [1, 2])
    with pytest.raises(RuntimeError):
        batch_beam_search(torch.zeros(2, 3, 4), crit, eos=0, beam_size=2, max_len=5)


def test_s2s_logprob_pairs_rows_with_own_item():
    output = torch.stack([torch.full((2, 3), 1.0), torch.full((2, 3), 2.0)])
    crit = _FixedBeam(None, None)
    scores = compute_s2s_logprob([[1], [2], [3]], [1, 2], output, crit)
    assert crit.rows.size(0) == 3
    assert scores.tolist() == [6.0, 12.0, 12.0]


def test_uniform_lm_and_length_range():
    paths = [[1, 2], [3], [4, 5, 6]]
    assert uniform_lm_logprob(paths).tolist() == [0.0, 0.0, 0.0]
    assert path_length_range(paths) == (1, 3)
    assert path_length_range([]) == (None, None)
