"""
Application context for the CaseFlow client.

Builds the long-lived collaborators once (store, token manager, auth
service, request engine, sync engine) and wires them together explicitly.
Tests build their own context around an in-memory store and a local test
server; nothing here is a module-level singleton.
"""

import logging
from typing import Any, Callable, Dict, Mapping, Optional, Sequence, Union

from aiohttp import ClientSession

from caseflow.api_client import CaseFlowAPIClient, RetryConfig
from caseflow.auth.auth_service import AuthService, LoginResult, LogoutResult
from caseflow.auth.token_manager import TokenManager
from caseflow.case_service import CaseSyncEngine
from caseflow.case_store import LocalCaseStore
from caseflow.commands import CaseCommand
from caseflow.config import ClientConfiguration
from caseflow.connectivity import ConnectivityMonitor
from caseflow.interfaces import KeyValueStore
from caseflow.logging_config import AuditLogger
from caseflow.models import Case, CaseQuery, CaseListResponse, RevokeReason, SubmissionResult, SyncResult
from caseflow.storage import FileKeyValueStore
from caseflow.sync_queue import SyncQueue

logger = logging.getLogger(__name__)


class CaseFlowClient:
    """
    Entry point used by form and UI collaborators.

    Exposes case listing, reads, writes, submission and sync, plus the
    authentication calls, on top of explicitly constructed services.
    """

    def __init__(
        self,
        config: ClientConfiguration,
        store: Optional[KeyValueStore] = None,
        connectivity: Optional[ConnectivityMonitor] = None,
        session: Optional[ClientSession] = None,
        clock: Optional[Callable[[], int]] = None
    ):
        self.config = config
        server_url = config.get_server_url()
        timeout = config.get_server_timeout()

        self.store = store or FileKeyValueStore(
            config.get_data_dir(),
            encrypt=config.is_storage_encrypted()
        )
        self.audit = AuditLogger()

        self.token_manager = TokenManager(self.store, clock=clock) if clock else TokenManager(self.store)
        self.auth_service = AuthService(
            server_url,
            self.token_manager,
            self.store,
            device_info=config.get_device_info(),
            timeout=timeout,
            session=session,
            audit_logger=self.audit
        )
        self.api_client = CaseFlowAPIClient(
            server_url,
            self.auth_service,
            timeout=timeout,
            retry_config=RetryConfig(
                max_retries=config.get_retry_attempts(),
                base_delay=config.get_retry_delay()
            ),
            session=session
        )
        self.connectivity = connectivity or ConnectivityMonitor()
        self.case_store = LocalCaseStore(self.store)
        self.sync_queue = SyncQueue(self.store)
        self.cases = CaseSyncEngine(
            self.api_client,
            self.case_store,
            self.sync_queue,
            self.connectivity,
            offline_mode=config.is_offline_mode(),
            max_sync_retries=config.get_max_sync_retries(),
            page_size=config.get_page_size(),
            audit_logger=self.audit
        )

        logger.debug(f"CaseFlow client wired for {server_url}")

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self) -> None:
        await self.api_client.close()
        await self.auth_service.close()

    # Authentication

    async def login(self, username: str, password: str) -> LoginResult:
        return await self.auth_service.login(username, password)

    async def logout(self) -> LogoutResult:
        return await self.auth_service.logout()

    async def is_authenticated(self) -> bool:
        return await self.auth_service.is_authenticated()

    async def get_access_token(self) -> Optional[str]:
        return await self.auth_service.get_access_token()

    # Cases

    async def list_cases(self, query: Optional[CaseQuery] = None) -> CaseListResponse:
        return await self.cases.get_cases(query)

    async def get_case(self, case_id: str) -> Case:
        return await self.cases.get_case(case_id)

    async def update_case(
        self,
        case_id: str,
        changes: Union[Mapping[str, Any], Sequence[CaseCommand]]
    ) -> Case:
        return await self.cases.update_case(case_id, changes)

    async def write_case_field(self, case_id: str, name: str, value: Any) -> Case:
        return await self.cases.write_case_field(case_id, name, value)

    async def submit_case(self, case_id: str) -> SubmissionResult:
        return await self.cases.submit_case(case_id)

    async def resubmit_case(self, case_id: str) -> SubmissionResult:
        return await self.cases.resubmit_case(case_id)

    def revoke_case(self, case_id: str, reason: Union[RevokeReason, str]) -> bool:
        return self.cases.revoke_case(case_id, reason)

    async def sync(self) -> SyncResult:
        return await self.cases.sync_with_server()

    async def get_status(self) -> Dict[str, Any]:
        """Snapshot used by the CLI status command."""
        user = self.auth_service.get_current_user()
        return {
            'server_url': self.config.get_server_url(),
            'authenticated': await self.is_authenticated(),
            'user': user.to_dict() if user else None,
            'token': self.token_manager.get_token_metadata(),
            'offline_mode': self.cases.offline_mode,
            'online': await self.connectivity.is_connected(),
            'cached_cases': len(self.case_store.read_all()),
            'pending_sync': self.cases.pending_sync_count(),
        }
