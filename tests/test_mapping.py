from __future__ import annotations

import numpy as np
import pytest

from sharded_rmse.mapping import mapping_from_ids, remap, remap_many


def test_remap_shifts_to_zero_based_and_treats_zero_as_unmapped() -> None:
    mapping = np.array([3, 0, 1, 2])

    assert remap(0, mapping) == 2
    assert remap(1, mapping) is None
    assert remap(2, mapping) == 0
    assert remap(3, mapping) == 1


@pytest.mark.parametrize("global_id", [4, 100, -1])
def test_remap_out_of_bounds_is_unmapped(global_id: int) -> None:
    assert remap(global_id, np.array([1, 2, 3, 4])) is None


def test_remap_many_agrees_with_scalar_remap() -> None:
    mapping = np.array([0, 5, 1, 0, 2])
    ids = np.array([0, 1, 2, 3, 4, 5, -2])

    local, mapped = remap_many(ids, mapping)

    expected = [remap(int(i), mapping) for i in ids]
    assert mapped.tolist() == [e is not None for e in expected]
    assert local[mapped].tolist() == [e for e in expected if e is not None]


def test_remap_many_on_empty_row() -> None:
    local, mapped = remap_many(np.array([], dtype=np.int64), np.array([1, 2]))
    assert local.shape == (0,)
    assert not mapped.any()


def test_mapping_from_ids_is_contiguous_in_id_order() -> None:
    table = mapping_from_ids([40, 7, 12], size=50)

    assert table.shape == (50,)
    assert remap(7, table) == 0
    assert remap(12, table) == 1
    assert remap(40, table) == 2
    assert int((table != 0).sum()) == 3


def test_mapping_from_ids_rejects_negative_ids() -> None:
    with pytest.raises(ValueError):
        mapping_from_ids([1, -3])
