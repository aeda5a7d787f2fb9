"""
Local case cache.

The whole collection is one JSON array under a single store key. Every
change is a read-modify-write of that array with no await in between, so
on a single event loop no other coroutine can interleave with it.
"""

import logging
from typing import Callable, Dict, Iterable, List, Optional

from caseflow.interfaces import KeyValueStore
from caseflow.models import Case, CaseQuery, CaseListResponse, Pagination

logger = logging.getLogger(__name__)

CASES_KEY = 'caseflow_cases'


class LocalCaseStore:
    """Cached cases keyed by id, in server/insertion order."""

    def __init__(self, store: KeyValueStore, key: str = CASES_KEY):
        self.store = store
        self.key = key

    def read_all(self) -> List[Case]:
        raw = self.store.get(self.key) or []
        cases = []
        for item in raw:
            try:
                cases.append(Case.from_dict(item))
            except (TypeError, ValueError) as e:
                logger.warning(f"Skipping unreadable cached case: {e}")
        return cases

    def write_all(self, cases: Iterable[Case]) -> None:
        self.store.set(self.key, [case.to_dict() for case in cases])

    def is_empty(self) -> bool:
        return not self.store.get(self.key)

    def get(self, case_id: str) -> Optional[Case]:
        for case in self.read_all():
            if case.id == case_id:
                return case
        return None

    def upsert(self, case: Case) -> Case:
        cases = self.read_all()
        for index, existing in enumerate(cases):
            if existing.id == case.id:
                cases[index] = case
                break
        else:
            cases.append(case)
        self.write_all(cases)
        return case

    def update(self, case_id: str, mutate: Callable[[Case], Case]) -> Optional[Case]:
        """Replace one cached case with mutate(case); None if not cached."""
        cases = self.read_all()
        for index, existing in enumerate(cases):
            if existing.id == case_id:
                cases[index] = mutate(existing)
                self.write_all(cases)
                return cases[index]
        return None

    def remove(self, case_id: str) -> bool:
        cases = self.read_all()
        remaining = [case for case in cases if case.id != case_id]
        if len(remaining) == len(cases):
            return False
        self.write_all(remaining)
        return True

    def merge_remote(self, remote_cases: Iterable[Case]) -> None:
        """
        Fold a server page into the cache: server records replace cached
        ones with the same id, cached records the server did not return stay.
        """
        cases = self.read_all()
        index_by_id: Dict[str, int] = {case.id: i for i, case in enumerate(cases)}
        for remote in remote_cases:
            if remote.id in index_by_id:
                cases[index_by_id[remote.id]] = remote
            else:
                index_by_id[remote.id] = len(cases)
                cases.append(remote)
        self.write_all(cases)


def _matches(case: Case, query: CaseQuery) -> bool:
    if query.status and case.status != str(getattr(query.status, 'value', query.status)):
        return False
    if query.verification_type and case.verification_type != str(
            getattr(query.verification_type, 'value', query.verification_type)):
        return False
    if query.is_saved is not None and case.is_saved != query.is_saved:
        return False
    if query.search:
        needle = query.search.lower()
        customer = case.fields.get('customer') or {}
        haystack = [
            case.id,
            case.fields.get('title'),
            case.fields.get('description'),
            case.fields.get('visitAddress'),
            customer.get('name') if isinstance(customer, dict) else None,
        ]
        if not any(needle in str(value).lower() for value in haystack if value):
            return False
    return True


def query_cases(cases: List[Case], query: CaseQuery) -> CaseListResponse:
    """Filter, sort and paginate cached cases the way the server would."""
    matched = [case for case in cases if _matches(case, query)]

    def sort_key(case: Case):
        value = case.get(query.sort_by)
        # None first, then numbers in numeric order, then everything else as text
        if value is None:
            return (False, False, '')
        is_number = isinstance(value, (int, float))
        return (True, is_number, value if is_number else str(value))

    matched.sort(key=sort_key, reverse=query.sort_order == 'desc')

    total = len(matched)
    start = (query.page - 1) * query.limit
    page = matched[start:start + query.limit]
    total_pages = (total + query.limit - 1) // query.limit

    return CaseListResponse(
        cases=page,
        pagination=Pagination(page=query.page, limit=query.limit, total=total, total_pages=total_pages),
        source='local'
    )
