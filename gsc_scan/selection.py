from __future__ import annotations

from typing import FrozenSet, Hashable, Iterable, Iterator, Optional, Set


class SelectionSet:
    """Ids picked for a batch action, scoped to the page currently shown.

    Once a page is set (``set_page`` or ``select_all``) the selection only
    ever holds ids from that page; ``toggle`` ignores anything else. Without a
    page, any id may be selected.
    """

    def __init__(
        self,
        ids: Iterable[Hashable] = (),
        page_ids: Optional[Iterable[Hashable]] = None,
    ) -> None:
        self._ids = set(ids)
        self._page: Optional[Set[Hashable]] = None
        if page_ids is not None:
            self.set_page(page_ids)

    @property
    def page(self) -> Optional[FrozenSet[Hashable]]:
        return frozenset(self._page) if self._page is not None else None

    def set_page(self, page_ids: Iterable[Hashable]) -> None:
        self._page = set(page_ids)
        self._ids &= self._page

    def toggle(self, item_id: Hashable) -> bool:
        if item_id in self._ids:
            self._ids.discard(item_id)
            return False
        if self._page is not None and item_id not in self._page:
            return False
        self._ids.add(item_id)
        return True

    def select_all(self, page_ids: Iterable[Hashable]) -> None:
        self._page = set(page_ids)
        self._ids = set(self._page)

    def clear(self) -> None:
        self._ids.clear()

    def all_selected(self, page_ids: Optional[Iterable[Hashable]] = None) -> bool:
        page = set(page_ids) if page_ids is not None else (self._page or set())
        return bool(page) and page <= self._ids

    @property
    def ids(self) -> FrozenSet[Hashable]:
        return frozenset(self._ids)

    def __contains__(self, item_id: object) -> bool:
        return item_id in self._ids

    def __iter__(self) -> Iterator[Hashable]:
        return iter(sorted(self._ids, key=str))

    def __len__(self) -> int:
        return len(self._ids)

    def __bool__(self) -> bool:
        return bool(self._ids)
