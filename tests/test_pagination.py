"""Pagination envelope."""

from berrycrud.core.pagination import Pagination, paginate_list


class TestPagination:
    def test_envelope_keys(self):
        assert Pagination.for_request(2, 10, 35).to_dict() == {
            'current': 2,
            'previous': 1,
            'next': 3,
            'perPage': 10,
            'totalPage': 4,
            'totalItem': 35,
        }

    def test_first_and_last_page(self):
        first = Pagination.for_request(1, 10, 35).to_dict()
        assert first['previous'] == 0 and first['next'] == 2
        last = Pagination.for_request(4, 10, 35).to_dict()
        assert last['next'] == 0

    def test_empty_result_has_one_page(self):
        p = Pagination.for_request(1, 10, 0)
        assert p.total_pages == 1
        assert not p.has_more

    def test_bad_input_is_clamped(self):
        p = Pagination.for_request('abc', 0, 5)
        assert (p.current, p.per_page) == (1, 1)
        assert Pagination.for_request(-3, 5, 5).current == 1

    def test_paginate_list(self):
        items, p = paginate_list(list(range(7)), 3, 3)
        assert items == [6]
        assert p.offset == 6 and p.total == 7
        items, _ = paginate_list(list(range(7)), 9, 3)
        assert items == []
