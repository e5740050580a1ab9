"""
Unit tests for prflow/schemas/common.py pagination helpers.
"""

import pytest

from prflow.schemas.common import build_pagination, page_offset


@pytest.mark.parametrize(
    "page, limit, offset",
    [(1, 20, 0), (3, 20, 40), (2, 1, 1), (0, 20, 0)],
)
def test_page_offset(page, limit, offset):
    assert page_offset(page, limit) == offset


def test_pagination_middle_page():
    meta = build_pagination(page=2, limit=10, total=25)
    assert meta.total_pages == 3
    assert (meta.has_prev, meta.has_next) == (True, True)


def test_pagination_last_page():
    meta = build_pagination(page=3, limit=10, total=30)
    assert meta.total_pages == 3
    assert meta.has_next is False


def test_empty_listing_has_one_page():
    meta = build_pagination(page=1, limit=20, total=0)
    assert meta.total_pages == 1
    assert (meta.has_prev, meta.has_next) == (False, False)
