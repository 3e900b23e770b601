from __future__ import annotations

from datetime import UTC, datetime
from typing import Any, Dict, List, Optional, Protocol, Tuple
import asyncio
import logging

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from ..domain.chat_models import (
    ChatReply,
    Conversation,
    ConversationCreate,
    EntityRef,
    Message,
    TenantScope,
)
from ..domain.directives import CreateProjectDirective, CreateTaskDirective
from ..domain.errors import (
    AssistantError,
    CreationFailure,
    QuotaOrCapacityError,
    TransientNetworkError,
)


LOG = logging.getLogger("assistant.http")

QUOTA_CODES = frozenset({"QUOTA_EXCEEDED", "TOKENS_EXPIRED", "RATE_LIMITED"})
_QUOTA_HINTS = ("quota", "rate limit", "exceeded", "tokens")
_EPOCH = datetime(1970, 1, 1, tzinfo=UTC)


class AssistantBackend(Protocol):
    async def list_conversations(self) -> List[Conversation]: ...

    async def create_conversation(self, payload: ConversationCreate) -> Conversation: ...

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]: ...

    async def delete_conversation(self, conversation_id: str) -> None: ...

    async def send_chat_message(
        self, conversation_id: str, content: str, model_id: Optional[str] = None
    ) -> ChatReply: ...

    async def create_project_from_directive(
        self, directive: CreateProjectDirective, scope: TenantScope
    ) -> EntityRef: ...

    async def create_task_from_directive(self, directive: CreateTaskDirective, scope: TenantScope) -> EntityRef: ...

    async def find_existing_project(self, scope: TenantScope, name: str) -> Optional[EntityRef]: ...

    async def find_existing_task(
        self, scope: TenantScope, title: str, project_id: Optional[str] = None
    ) -> Optional[EntityRef]: ...


def _build_session() -> requests.Session:
    session = requests.Session()
    # Only reads are retried by the transport; a retried POST could create twice
    retry = Retry(
        total=2,
        backoff_factor=0.5,
        status_forcelist=(502, 503, 504),
        allowed_methods=frozenset(["GET"]),
    )
    adapter = HTTPAdapter(max_retries=retry, pool_connections=10, pool_maxsize=10)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    return session


def _entity_id(item: Dict[str, Any]) -> Optional[str]:
    value = item.get("id") or item.get("_id")
    return str(value) if value else None


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        return value
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value / 1000.0, tz=UTC)
    if isinstance(value, str) and value.strip():
        try:
            return datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
    return None


def message_from_api(payload: Dict[str, Any]) -> Optional[Message]:
    role = payload.get("role")
    if role not in ("user", "assistant"):
        return None
    created = _parse_timestamp(payload.get("created_at") or payload.get("created_date")) or _EPOCH
    action = payload.get("action")
    return Message(
        role=role,
        content=str(payload.get("content") or ""),
        created_at=created,
        message_id=_entity_id(payload),
        pending=False,
        action=action if isinstance(action, dict) else None,
    )


def conversation_from_api(payload: Dict[str, Any]) -> Conversation:
    metadata = payload.get("metadata") if isinstance(payload.get("metadata"), dict) else {}
    messages: List[Message] = []
    for raw in payload.get("messages") or []:
        if not isinstance(raw, dict):
            continue
        message = message_from_api(raw)
        if message is not None:
            messages.append(message)
    return Conversation(
        conversation_id=_entity_id(payload) or "",
        title=payload.get("title") or metadata.get("name"),
        messages=messages,
        metadata=metadata,
        updated_at=_parse_timestamp(payload.get("updated_date") or payload.get("updated_at")),
    )


def _error_text(resp: Any, default: str) -> str:
    try:
        data = resp.json()
    except ValueError:
        return default
    if isinstance(data, dict):
        for key in ("error", "message"):
            value = data.get(key)
            if isinstance(value, str) and value:
                return value
    return default


def _body(resp: Any) -> Any:
    # proxies answer 200 with HTML when the upstream is down
    try:
        return resp.json()
    except ValueError as exc:
        LOG.warning("assistant_http_unreadable_body", extra={"status": resp.status_code})
        raise TransientNetworkError("Unreadable response from server", resp.status_code) from exc


def _body_object(resp: Any) -> Dict[str, Any]:
    data = _body(resp)
    if not isinstance(data, dict):
        LOG.warning("assistant_http_unexpected_body", extra={"status": resp.status_code, "body_type": type(data).__name__})
        raise TransientNetworkError("Unexpected response from server", resp.status_code)
    return data


def _nested(data: Dict[str, Any], key: str) -> Dict[str, Any]:
    value = data.get(key)
    return value if isinstance(value, dict) else {}


def _looks_like_quota(text: str) -> bool:
    lowered = text.lower()
    return any(hint in lowered for hint in _QUOTA_HINTS)


class AssistantApiClient:
    """HTTP client for the assistant backend routes.

    Every call runs the blocking ``requests`` session in a worker thread so the
    event loop keeps ticking; cancelling the awaiting task abandons the result.
    """

    def __init__(
        self,
        base_url: str,
        scope: TenantScope,
        token: Optional[str] = None,
        timeout: Tuple[float, float] = (3.0, 60.0),
        session: Optional[requests.Session] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.scope = scope
        self._token = token
        self._timeout = timeout
        self._session = session or _build_session()

    def _url(self, path: str) -> str:
        return f"{self.base_url}/api{path}"

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return headers

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        body: Optional[Dict[str, Any]] = None,
    ) -> Any:
        try:
            resp = self._session.request(
                method,
                self._url(path),
                params=params,
                json=body,
                headers=self._headers(),
                timeout=self._timeout,
            )
        except requests.exceptions.RequestException as exc:
            LOG.warning("assistant_http_failed", extra={"method": method, "path": path, "err": str(exc)})
            raise TransientNetworkError(f"Network connection issue: {exc}") from exc
        if resp.status_code >= 500:
            raise TransientNetworkError(_error_text(resp, f"Server error {resp.status_code}"), resp.status_code)
        return resp

    async def _call(self, method: str, path: str, **kwargs: Any) -> Any:
        return await asyncio.to_thread(self._request, method, path, **kwargs)

    def _scope_params(self) -> Dict[str, Any]:
        params: Dict[str, Any] = {"user_id": self.scope.user_id}
        if self.scope.tenant_id:
            params["tenant_id"] = self.scope.tenant_id
        return params

    async def list_conversations(self) -> List[Conversation]:
        resp = await self._call("GET", "/groona-assistant/conversations", params=self._scope_params())
        if resp.status_code >= 400:
            LOG.warning("list_conversations_rejected", extra={"status": resp.status_code})
            return []
        data = _body(resp)
        if not isinstance(data, list):
            return []
        return [conversation_from_api(item) for item in data if isinstance(item, dict)]

    async def create_conversation(self, payload: ConversationCreate) -> Conversation:
        metadata = dict(payload.metadata)
        if payload.title and "name" not in metadata:
            metadata["name"] = payload.title
        body = {**self._scope_params(), "title": payload.title, "metadata": metadata}
        resp = await self._call("POST", "/groona-assistant/conversations", body=body)
        if resp.status_code >= 400:
            raise AssistantError(_error_text(resp, "Failed to create conversation"))
        return conversation_from_api(_body_object(resp))

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        resp = await self._call("GET", f"/groona-assistant/conversations/{conversation_id}")
        if resp.status_code == 404:
            return None
        if resp.status_code >= 400:
            raise AssistantError(_error_text(resp, "Failed to load conversation"))
        return conversation_from_api(_body_object(resp))

    async def delete_conversation(self, conversation_id: str) -> None:
        resp = await self._call("DELETE", f"/groona-assistant/conversations/{conversation_id}")
        if resp.status_code >= 400 and resp.status_code != 404:
            raise AssistantError(_error_text(resp, "Failed to delete conversation"))

    async def send_chat_message(
        self, conversation_id: str, content: str, model_id: Optional[str] = None
    ) -> ChatReply:
        body: Dict[str, Any] = {
            "conversation_id": conversation_id,
            "content": content,
            **self._scope_params(),
        }
        if model_id:
            body["model"] = model_id
        resp = await self._call("POST", "/groona-assistant/chat", body=body)
        if resp.status_code >= 400:
            text = _error_text(resp, "Failed to send message")
            if resp.status_code == 429 or _looks_like_quota(text):
                raise QuotaOrCapacityError(text, model=model_id)
            raise AssistantError(text)
        data = _body_object(resp)
        # Quota exhaustion arrives as a 200 envelope flagged with error/code
        if data.get("error") is True or data.get("code") in QUOTA_CODES:
            raise QuotaOrCapacityError(
                str(data.get("message") or "Model error occurred"),
                model=data.get("model") or model_id,
                code=data.get("code"),
            )
        action = data.get("action")
        return ChatReply(
            reply_text=str(data.get("message") or data.get("text") or ""),
            directive=action if isinstance(action, dict) else None,
            model=data.get("model") or model_id,
        )

    async def create_project_from_directive(
        self, directive: CreateProjectDirective, scope: TenantScope
    ) -> EntityRef:
        body = {
            "project_name": directive.project_name,
            "workspace_name": directive.workspace_name,
            "deadline": directive.deadline,
            "description": directive.description,
            "tenant_id": scope.tenant_id,
            "user_id": scope.user_id,
            "user_email": scope.user_email,
        }
        resp = await self._call("POST", "/groona-assistant/create-project", body=body)
        if resp.status_code >= 400:
            raise CreationFailure(_error_text(resp, "Failed to create project"), kind="project")
        project = _nested(_body_object(resp), "project")
        entity_id = _entity_id(project)
        if not entity_id:
            raise CreationFailure("Project created without an id", kind="project")
        return EntityRef(entity_id=entity_id, kind="project", name=project.get("name") or directive.project_name)

    async def create_task_from_directive(self, directive: CreateTaskDirective, scope: TenantScope) -> EntityRef:
        body: Dict[str, Any] = {
            "title": directive.title,
            "project_name": directive.project_name,
            "sprint_name": directive.sprint_name,
            "assignee_email": directive.assignee_email,
            "assignee_name": directive.assignee_name,
            "due_date": directive.due_date,
            "description": directive.description,
            "tenant_id": scope.tenant_id,
            "user_id": scope.user_id,
            "user_email": scope.user_email,
        }
        if directive.estimated_hours is not None:
            body["estimated_hours"] = directive.estimated_hours
        resp = await self._call("POST", "/groona-assistant/create-task", body=body)
        if resp.status_code >= 400:
            raise CreationFailure(_error_text(resp, "Failed to create task"), kind="task")
        task = _nested(_body_object(resp), "task")
        entity_id = _entity_id(task)
        if not entity_id:
            raise CreationFailure("Task created without an id", kind="task")
        project_id = task.get("project_id") or task.get("projectId")
        return EntityRef(
            entity_id=entity_id,
            kind="task",
            name=task.get("title") or directive.title,
            project_id=str(project_id) if project_id else None,
        )

    async def _filter(self, entity: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        resp = await self._call("POST", f"/entities/{entity}/filter", body={"filters": filters})
        if resp.status_code >= 400:
            raise AssistantError(_error_text(resp, f"Failed to query {entity}"))
        data = _body(resp)
        return [item for item in data if isinstance(item, dict)] if isinstance(data, list) else []

    async def find_existing_project(self, scope: TenantScope, name: str) -> Optional[EntityRef]:
        rows = await self._filter("Project", {"tenant_id": scope.tenant_id, "name": name})
        for row in rows:
            entity_id = _entity_id(row)
            if entity_id:
                return EntityRef(entity_id=entity_id, kind="project", name=row.get("name"))
        return None

    async def find_existing_task(
        self, scope: TenantScope, title: str, project_id: Optional[str] = None
    ) -> Optional[EntityRef]:
        filters: Dict[str, Any] = {"tenant_id": scope.tenant_id, "title": title}
        if project_id:
            filters["project_id"] = project_id
        rows = await self._filter("Task", filters)
        for row in rows:
            entity_id = _entity_id(row)
            if entity_id:
                owner = row.get("project_id") or row.get("projectId")
                return EntityRef(
                    entity_id=entity_id,
                    kind="task",
                    name=row.get("title"),
                    project_id=str(owner) if owner else None,
                )
        return None
