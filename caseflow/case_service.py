"""
Case synchronization engine.

Reads go to the server when online and fall back to the local cache on any
failure. Writes are sent to the server when possible and applied locally
otherwise; mutations made while offline are queued and replayed by
sync_with_server().
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union
from urllib.parse import quote

from caseflow.api_client import CaseFlowAPIClient, ApiResponse, UploadFile
from caseflow.case_store import LocalCaseStore, query_cases
from caseflow.commands import CaseCommand, to_commands, build_patch
from caseflow.connectivity import ConnectivityMonitor
from caseflow.exceptions import CaseNotFoundError, ValidationError
from caseflow.logging_config import AuditLogger
from caseflow.models import (
    Case, CaseStatus, SubmissionStatus, RevokeReason, SyncAction, SyncQueueItem,
    CaseQuery, CaseListResponse, Pagination, SubmissionResult, SyncResult, parse_iso, utc_now_iso
)
from caseflow.outcome_migration import migrate_cases
from caseflow.sync_queue import SyncQueue

logger = logging.getLogger(__name__)

OFFLINE_SYNC_ERROR = 'No network connection. Sync will run when back online.'
OFFLINE_SUBMIT_ERROR = 'No network connection. Submission will be retried when back online.'
INTERRUPTED_SUBMIT_ERROR = 'Submission was interrupted. Please try again.'


def _case_path(case_id: str) -> str:
    return f"/cases/{quote(case_id, safe='')}"


def _extract_case(data: Any) -> Optional[Dict[str, Any]]:
    """Service responses carry the case either directly or under "case"."""
    if isinstance(data, dict):
        if data.get('id'):
            return data
        nested = data.get('case')
        if isinstance(nested, dict) and nested.get('id'):
            return nested
    return None


class CaseSyncEngine:
    """
    Reconciles the local case cache with the case service.

    Remote failures never escape as exceptions: reads degrade to the cache,
    writes degrade to local application (and queueing when offline).
    """

    def __init__(
        self,
        api_client: CaseFlowAPIClient,
        case_store: LocalCaseStore,
        sync_queue: SyncQueue,
        connectivity: ConnectivityMonitor,
        offline_mode: bool = False,
        max_sync_retries: int = 3,
        page_size: int = 20,
        audit_logger: Optional[AuditLogger] = None
    ):
        self.api = api_client
        self.case_store = case_store
        self.sync_queue = sync_queue
        self.connectivity = connectivity
        self.offline_mode = offline_mode
        self.max_sync_retries = max_sync_retries
        self.page_size = page_size
        self.audit = audit_logger or AuditLogger()

    async def _is_online(self) -> bool:
        if self.offline_mode:
            return False
        return await self.connectivity.is_connected()

    # Reads

    def get_local_cases(self) -> List[Case]:
        """
        Cached cases with deprecated outcomes migrated.

        When anything was migrated the whole collection is written back, so
        the next read finds nothing left to do.
        """
        cases, changed = migrate_cases(self.case_store.read_all())
        if changed:
            self.case_store.write_all(cases)
            logger.info("Persisted migrated verification outcomes")
        return cases

    def _local_page(self, query: CaseQuery) -> CaseListResponse:
        return query_cases(self.get_local_cases(), query)

    def _parse_case_page(self, response: ApiResponse, query: CaseQuery) -> Tuple[List[Case], Pagination]:
        data = response.data
        raw_cases = data.get('cases') if isinstance(data, dict) else data
        if not isinstance(raw_cases, list):
            raise ValueError("Case list response has no case array")

        cases = [Case.from_dict(item) for item in raw_cases]

        raw_pagination = response.pagination
        if raw_pagination is None and isinstance(data, dict):
            raw_pagination = data.get('pagination')

        if isinstance(raw_pagination, dict):
            pagination = Pagination.from_dict(raw_pagination)
        else:
            pagination = Pagination(
                page=query.page,
                limit=query.limit,
                total=len(cases),
                total_pages=1 if cases else 0
            )
        return cases, pagination

    async def get_cases(self, query: Optional[CaseQuery] = None) -> CaseListResponse:
        """
        One page of cases.

        Offline (or in offline mode) the cache answers without touching the
        network. Online, the server page is merged into the cache and
        returned; any failure falls back to the cache.
        """
        query = query or CaseQuery(limit=self.page_size)

        if not await self._is_online():
            logger.debug("Offline; listing cases from local cache")
            return self._local_page(query)

        response = await self.api.get('/cases', params=query.to_params())
        if response.success:
            try:
                cases, pagination = self._parse_case_page(response, query)
            except (TypeError, ValueError) as e:
                logger.warning(f"Unusable case list from server, using cache: {e}")
                return self._local_page(query)

            self.case_store.merge_remote(cases)
            return CaseListResponse(cases=cases, pagination=pagination, source='remote')

        logger.warning(f"Case list request failed ({response.error_code}); using local cache")
        return self._local_page(query)

    async def get_case(self, case_id: str) -> Case:
        """
        A single case, from the server when reachable, else from the cache.

        Raises:
            CaseNotFoundError: the case is neither on the server nor cached
        """
        if await self._is_online():
            response = await self.api.get(_case_path(case_id))
            raw = _extract_case(response.data) if response.success else None
            if raw is not None:
                try:
                    case = Case.from_dict(raw)
                except ValueError as e:
                    logger.warning(f"Unusable case {case_id} from server: {e}")
                else:
                    self.case_store.upsert(case)
                    return case

        for case in self.get_local_cases():
            if case.id == case_id:
                return case

        raise CaseNotFoundError(case_id)

    # Writes

    async def update_case(
        self,
        case_id: str,
        changes: Union[Mapping[str, Any], Sequence[CaseCommand]]
    ) -> Case:
        """
        Apply field changes to a case.

        Raises:
            ValidationError: a change targets an engine-owned or invalid field
            CaseNotFoundError: the server update failed and the case is not cached
        """
        commands = to_commands(changes)
        return await self._save_patch(case_id, build_patch(commands))

    async def write_case_field(self, case_id: str, name: str, value: Any) -> Case:
        return await self.update_case(case_id, {name: value})

    async def _save_patch(self, case_id: str, patch: Dict[str, Any]) -> Case:
        online = await self._is_online()

        if online:
            response = await self.api.put(_case_path(case_id), patch)
            if response.success:
                raw = _extract_case(response.data)
                if raw is not None:
                    case = self.case_store.upsert(Case.from_dict(raw))
                    self.audit.log_case_update(case_id, list(patch), result='success')
                    return case
                # Accepted without a canonical copy; mirror it locally or fetch it
                if self.case_store.get(case_id) is not None:
                    return self._apply_locally(case_id, patch, enqueue=False)
                return await self._fetch_after_update(case_id, patch)

            logger.warning(f"Remote update of case {case_id} failed ({response.error_code}); applying locally")

        return self._apply_locally(case_id, patch, enqueue=not online)

    async def _fetch_after_update(self, case_id: str, patch: Dict[str, Any]) -> Case:
        """Server accepted an update to an uncached case without echoing it back."""
        self.audit.log_case_update(case_id, list(patch), result='success')
        response = await self.api.get(_case_path(case_id))
        raw = _extract_case(response.data) if response.success else None
        if raw is not None:
            try:
                return self.case_store.upsert(Case.from_dict(raw))
            except ValueError as e:
                logger.warning(f"Unusable case {case_id} from server: {e}")

        logger.info(f"Case {case_id} updated remotely; no copy to cache")
        return Case.from_dict({**patch, 'id': case_id})

    def _apply_locally(self, case_id: str, patch: Dict[str, Any], enqueue: bool) -> Case:
        stamped = dict(patch)
        stamped['updatedAt'] = utc_now_iso()

        updated = self.case_store.update(case_id, lambda case: case.merged(stamped))
        if updated is None:
            raise CaseNotFoundError(case_id)

        if enqueue:
            self.sync_queue.enqueue(SyncQueueItem(case_id=case_id, action=SyncAction.UPDATE, payload=dict(patch)))

        self.audit.log_case_update(case_id, list(patch), result='queued' if enqueue else 'local')
        return updated

    async def update_case_status(self, case_id: str, status: Union[CaseStatus, str]) -> Case:
        """
        Move a case through the workflow, stamping the matching timestamps.
        Completing a case makes it pending submission and releases the
        offline hold.
        """
        try:
            status = CaseStatus(status)
        except ValueError as e:
            raise ValidationError(f"Invalid status: {status!r}", field_name='status', cause=e) from e

        current = self.case_store.get(case_id)
        now = utc_now_iso()
        patch: Dict[str, Any] = {'status': status.value}

        if status == CaseStatus.IN_PROGRESS and not (current and current.in_progress_at):
            patch['inProgressAt'] = now
        elif status == CaseStatus.COMPLETED:
            patch['isSaved'] = False
            patch['completedAt'] = now
            if not current or current.submission_status != SubmissionStatus.SUCCESS.value:
                patch['submissionStatus'] = SubmissionStatus.PENDING.value

        return await self._save_patch(case_id, patch)

    async def set_saved(self, case_id: str, is_saved: bool) -> Case:
        """Toggle the offline-hold flag."""
        return await self._save_patch(case_id, {
            'isSaved': bool(is_saved),
            'savedAt': utc_now_iso() if is_saved else None,
        })

    # Submission

    def _submission_is_stale(self, case: Case) -> bool:
        """A submitting case whose attempt outlived the request budget was interrupted."""
        started = parse_iso(case.last_submission_attempt)
        if started is None:
            return True
        age = (datetime.now(timezone.utc) - started).total_seconds()
        return age > self.api.request_budget()

    def _mark_submission_failed(self, case_id: str, error: str) -> None:
        self.case_store.update(case_id, lambda c: c.merged({
            'submissionStatus': SubmissionStatus.FAILED.value,
            'submissionError': error,
        }))

    async def submit_case(self, case_id: str) -> SubmissionResult:
        """
        Send the full case to the submit endpoint.

        pending/failed -> submitting -> success | failed. A successful
        submission is final; submitting again is refused. A case left in
        submitting by a crashed process becomes retryable once its attempt
        is older than the API client's request budget.
        """
        case = self.case_store.get(case_id)
        if case is None:
            return SubmissionResult(success=False, error=f"Case {case_id} not found")

        state = case.effective_submission_status
        if state == SubmissionStatus.SUCCESS.value:
            return SubmissionResult(success=False, error='Case has already been submitted')
        if state == SubmissionStatus.SUBMITTING.value:
            if not self._submission_is_stale(case):
                return SubmissionResult(success=False, error='Submission already in progress')
            logger.warning(f"Retrying stale submission of case {case_id} (started {case.last_submission_attempt})")

        attempt_at = utc_now_iso()
        submitting = self.case_store.update(case_id, lambda c: c.merged({
            'submissionStatus': SubmissionStatus.SUBMITTING.value,
            'lastSubmissionAttempt': attempt_at,
        }))

        try:
            online = await self._is_online()
            response = None
            if online:
                response = await self.api.post(f"{_case_path(case_id)}/submit", submitting.to_dict())
        except BaseException:
            # Cancelled or failed mid-request; the case must not stay submitting
            self._mark_submission_failed(case_id, INTERRUPTED_SUBMIT_ERROR)
            logger.warning(f"Submission of case {case_id} was interrupted")
            self.audit.log_case_submission(case_id, 'failed', error_message=INTERRUPTED_SUBMIT_ERROR)
            raise

        if response is not None and response.success:
            self.case_store.update(case_id, lambda c: c.merged({
                'submissionStatus': SubmissionStatus.SUCCESS.value,
                'submissionError': None,
                'isSaved': False,
                'status': CaseStatus.SUBMITTED.value,
                'updatedAt': utc_now_iso(),
            }))
            logger.info(f"Case {case_id} submitted")
            self.audit.log_case_submission(case_id, 'success')
            return SubmissionResult(success=True)

        if response is not None:
            error = response.error_message or 'Submission failed. Please try again.'
        else:
            error = OFFLINE_SUBMIT_ERROR

        self._mark_submission_failed(case_id, error)

        if not online:
            self.sync_queue.enqueue(SyncQueueItem(
                case_id=case_id,
                action=SyncAction.UPDATE,
                payload={'status': CaseStatus.SUBMITTED.value}
            ))

        logger.warning(f"Submission of case {case_id} failed: {error}")
        self.audit.log_case_submission(case_id, 'failed', error_message=error)
        return SubmissionResult(success=False, error=error)

    async def resubmit_case(self, case_id: str) -> SubmissionResult:
        return await self.submit_case(case_id)

    # Queue drain

    async def _replay(self, item: SyncQueueItem) -> ApiResponse:
        path = _case_path(item.case_id)
        if item.action == SyncAction.CREATE:
            return await self.api.post('/cases', item.payload)
        if item.action == SyncAction.UPDATE:
            return await self.api.put(path, item.payload)
        return await self.api.delete(path)

    async def sync_with_server(self) -> SyncResult:
        """
        Replay queued mutations in insertion order.

        Each failure bumps the item's retry count; once it reaches
        max_sync_retries the item is dropped and reported. If anything was
        synced, page one of the case list is re-fetched.
        """
        if not await self._is_online():
            return SyncResult(success=False, synced_count=0, errors=[OFFLINE_SYNC_ERROR])

        items = self.sync_queue.items()
        synced_count = 0
        errors: List[str] = []
        retained: Dict[str, SyncQueueItem] = {}

        for item in items:
            response = await self._replay(item)
            if response.success:
                synced_count += 1
                continue

            reason = response.error_message or 'Unknown error'
            item.retry_count += 1
            if item.retry_count >= self.max_sync_retries:
                errors.append(
                    f"Giving up on {item.action.value} for case {item.case_id} "
                    f"after {item.retry_count} attempts: {reason}"
                )
            else:
                errors.append(f"Failed to sync {item.action.value} for case {item.case_id}: {reason}")
                retained[item.id] = item

        self.sync_queue.apply_drain_results([item.id for item in items], retained)

        self.audit.log_sync_operation(
            result='completed' if not errors else 'partial',
            synced_count=synced_count,
            error_count=len(errors),
            pending_count=len(self.sync_queue)
        )

        if synced_count:
            await self.get_cases(CaseQuery(page=1, limit=self.page_size))

        return SyncResult(success=not errors, synced_count=synced_count, errors=errors)

    def pending_sync_count(self) -> int:
        return len(self.sync_queue)

    # Other operations

    def revoke_case(self, case_id: str, reason: Union[RevokeReason, str]) -> bool:
        """
        Drop a case from the local cache.

        Local only: no mutation is queued, so the server still holds the
        case and a later list refresh brings it back.
        """
        reason_text = reason.value if isinstance(reason, RevokeReason) else str(reason)
        removed = self.case_store.remove(case_id)
        logger.info(f"Case {case_id} revoked: {reason_text}")
        self.audit.log_case_revoke(case_id, reason_text)
        return removed

    async def upload_attachment(
        self,
        case_id: str,
        file: UploadFile,
        additional_data: Optional[Dict[str, Any]] = None
    ) -> ApiResponse:
        return await self.api.upload(f"{_case_path(case_id)}/attachments", file, additional_data)

    async def download_attachment(self, endpoint: str) -> Optional[bytes]:
        return await self.api.download(endpoint)

    def seed_cases(self, cases: Sequence[Case]) -> bool:
        """Populate an empty cache (first run / demo data). Never overwrites."""
        if not self.case_store.is_empty():
            return False
        self.case_store.write_all(cases)
        logger.info(f"Seeded {len(cases)} cases")
        return True
