from __future__ import annotations

import json
import logging
import os
import urllib.error
import urllib.request
import uuid
from dataclasses import dataclass
from typing import Any, Callable

from pydantic import BaseModel, ValidationError

from schemas.lending import (
    EQUIPMENT_STATUS_TO_WIRE,
    DirectoryUser,
    Equipment,
    ImageUpload,
    Loan,
    RegisterLoanRequest,
)
from schemas.session import ConsoleUser
from services.access_service import can
from services.session_store import SessionStore


DEFAULT_BASE_URL = "https://unistock-api.azurewebsites.net"
DEFAULT_TIMEOUT_SECONDS = 20.0
DEFAULT_REGISTER_ROLE = "Estudiante"
SESSION_EXPIRED_MESSAGE = "Session expired. Please sign in again."

API_LOGGER = logging.getLogger("lending_console.api")


class LendingApiError(RuntimeError):
    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status


class SessionExpiredError(RuntimeError):
    def __init__(self, message: str = SESSION_EXPIRED_MESSAGE):
        super().__init__(message)
        self.status = 401


@dataclass
class ApiResponse:
    status: int
    content_type: str
    body: bytes

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    @property
    def is_json(self) -> bool:
        return "application/json" in self.content_type.lower()

    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")

    def json(self) -> Any:
        return json.loads(self.text())


def get_base_url() -> str:
    return (os.environ.get("LENDING_API_BASE_URL") or DEFAULT_BASE_URL).strip().rstrip("/")


def get_timeout_seconds() -> float:
    raw = (os.environ.get("LENDING_API_TIMEOUT_SECONDS") or "").strip()
    if not raw:
        return DEFAULT_TIMEOUT_SECONDS
    try:
        value = float(raw)
    except ValueError:
        return DEFAULT_TIMEOUT_SECONDS
    return value if value > 0 else DEFAULT_TIMEOUT_SECONDS


def encode_multipart(fields: dict[str, str], files: dict[str, ImageUpload] | None = None) -> tuple[bytes, str]:
    boundary = f"----LendingConsole{uuid.uuid4().hex}"
    chunks: list[bytes] = []
    for name, value in fields.items():
        chunks.append(f"--{boundary}\r\n".encode("utf-8"))
        chunks.append(f'Content-Disposition: form-data; name="{name}"\r\n\r\n'.encode("utf-8"))
        chunks.append(str(value).encode("utf-8"))
        chunks.append(b"\r\n")
    for name, upload in (files or {}).items():
        chunks.append(f"--{boundary}\r\n".encode("utf-8"))
        chunks.append(
            f'Content-Disposition: form-data; name="{name}"; filename="{upload.filename}"\r\n'.encode("utf-8")
        )
        chunks.append(f"Content-Type: {upload.content_type}\r\n\r\n".encode("utf-8"))
        chunks.append(upload.content)
        chunks.append(b"\r\n")
    chunks.append(f"--{boundary}--\r\n".encode("utf-8"))
    return b"".join(chunks), f"multipart/form-data; boundary={boundary}"


def extract_error_message(response: ApiResponse, default: str) -> str:
    if response.is_json:
        try:
            payload = response.json()
        except json.JSONDecodeError:
            payload = None
        if isinstance(payload, dict):
            return str(payload.get("message") or payload.get("title") or default)
        if isinstance(payload, str) and payload.strip():
            return payload.strip()
    text = response.text().strip()
    return text or default


def _decode_json(response: ApiResponse) -> Any:
    try:
        return response.json()
    except json.JSONDecodeError as exc:
        raise LendingApiError("Invalid response from server", status=response.status) from exc


def _parse_model(model: type[BaseModel], payload: Any, what: str) -> Any:
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        raise LendingApiError(f"Unexpected {what} payload from server") from exc


def _parse_list(model: type[BaseModel], payload: Any, what: str) -> list[Any]:
    if not isinstance(payload, list):
        raise LendingApiError(f"Unexpected {what} payload from server")
    return [_parse_model(model, row, what) for row in payload]


class _HttpTransport:
    def __init__(
        self,
        base_url: str | None = None,
        *,
        timeout: float | None = None,
        opener: Callable[..., Any] | None = None,
    ):
        self.base_url = (base_url or get_base_url()).rstrip("/")
        self.timeout = timeout if timeout is not None else get_timeout_seconds()
        self._opener = opener or urllib.request.urlopen

    def _send(self, method: str, path: str, headers: dict[str, str], body: bytes | None = None) -> ApiResponse:
        request = urllib.request.Request(
            url=f"{self.base_url}{path}",
            data=body,
            headers=headers,
            method=method,
        )
        try:
            with self._opener(request, timeout=self.timeout) as response:
                result = ApiResponse(
                    status=int(response.status),
                    content_type=response.headers.get("Content-Type") or "",
                    body=response.read() or b"",
                )
        except urllib.error.HTTPError as exc:
            result = ApiResponse(
                status=int(exc.code),
                content_type=(exc.headers.get("Content-Type") if exc.headers else None) or "",
                body=exc.fp.read() if exc.fp else b"",
            )
        except urllib.error.URLError as exc:
            API_LOGGER.warning("Lending API unreachable method=%s path=%s reason=%s", method, path, exc.reason)
            raise LendingApiError(f"Lending API connection error: {exc.reason}") from exc
        except TimeoutError as exc:
            API_LOGGER.warning("Lending API timeout method=%s path=%s", method, path)
            raise LendingApiError("Lending API did not respond in time") from exc
        API_LOGGER.debug("Lending API method=%s path=%s status=%s", method, path, result.status)
        return result


class AuthApi(_HttpTransport):
    """Credential exchange and self-registration. These calls carry no bearer token."""

    def login(self, email: str, password: str) -> dict[str, Any]:
        body = json.dumps({"email": email, "password": password}).encode("utf-8")
        response = self._send("POST", "/api/Auth/login", {"Content-Type": "application/json"}, body)
        if not response.ok:
            raise LendingApiError(extract_error_message(response, "Unable to sign in"), status=response.status)

        try:
            payload = response.json()
        except json.JSONDecodeError as exc:
            raise LendingApiError("Invalid response from server", status=response.status) from exc

        if not isinstance(payload, dict) or not payload.get("token"):
            API_LOGGER.error("Login response without token keys=%s", sorted(payload) if isinstance(payload, dict) else type(payload).__name__)
            raise LendingApiError("The server response does not contain a valid token", status=response.status)
        return payload

    def register(self, name: str, email: str, password: str, role: str = DEFAULT_REGISTER_ROLE) -> dict[str, Any]:
        body = json.dumps(
            {
                "nombre": name,
                "email": email,
                "PasswordHash": password,
                "rol": role,
            }
        ).encode("utf-8")
        response = self._send("POST", "/api/Auth/registro", {"Content-Type": "application/json"}, body)
        if not response.ok:
            raise LendingApiError(_registration_error_message(response), status=response.status)

        if response.is_json:
            payload = _decode_json(response)
            if isinstance(payload, dict):
                return payload
            return {"message": str(payload)}
        return {"message": response.text().strip() or "User registered successfully"}


def _registration_error_message(response: ApiResponse) -> str:
    default = "Unable to register user"
    if not response.is_json:
        return response.text().strip() or default
    try:
        payload = response.json()
    except json.JSONDecodeError:
        return response.text().strip() or default
    if isinstance(payload, str):
        return payload or default
    if not isinstance(payload, dict):
        return default
    errors = payload.get("errors")
    if isinstance(errors, dict) and errors:
        lines = []
        for field, messages in errors.items():
            if not isinstance(messages, list):
                messages = [messages]
            lines.append(f"{field}: {', '.join(str(message) for message in messages)}")
        return "\n".join(lines)
    return str(payload.get("message") or payload.get("title") or default)


class LendingApiClient(_HttpTransport):
    """Bearer-authenticated transport shared by the domain clients.

    A 401 from any endpoint wipes the token and user from the session store
    and raises :class:`SessionExpiredError`; the caller cannot recover from it.
    """

    def __init__(self, store: SessionStore, base_url: str | None = None, **kwargs: Any):
        super().__init__(base_url, **kwargs)
        self.store = store

    def request(
        self,
        method: str,
        path: str,
        *,
        json_body: Any = None,
        fields: dict[str, str] | None = None,
        files: dict[str, ImageUpload] | None = None,
    ) -> ApiResponse:
        headers: dict[str, str] = {}
        token = self.store.get_token()
        if token:
            headers["Authorization"] = f"Bearer {token}"

        body: bytes | None = None
        if fields is not None or files:
            body, headers["Content-Type"] = encode_multipart(fields or {}, files)
        else:
            headers["Content-Type"] = "application/json"
            if json_body is not None:
                body = json.dumps(json_body).encode("utf-8")

        response = self._send(method, path, headers, body)
        if response.status == 401:
            API_LOGGER.warning("Lending API rejected credentials method=%s path=%s; clearing session", method, path)
            self.store.clear_credentials()
            raise SessionExpiredError()
        return response

    def expect_ok(self, response: ApiResponse, default_message: str) -> ApiResponse:
        if not response.ok:
            raise LendingApiError(extract_error_message(response, default_message), status=response.status)
        return response


class EquipmentApi:
    def __init__(self, client: LendingApiClient):
        self.client = client

    def list_all(self) -> list[Equipment]:
        response = self.client.expect_ok(self.client.request("GET", "/api/Implementos"), "Unable to load equipment")
        return _parse_list(Equipment, _decode_json(response), "equipment")

    def create(self, name: str, category: str, description: str, image: ImageUpload | None = None) -> Equipment | None:
        fields = {"nombre": name, "categoria": category, "descripcion": description}
        files = {"imagen": image} if image else None
        response = self.client.expect_ok(
            self.client.request("POST", "/api/Implementos", fields=fields, files=files),
            "Unable to create equipment",
        )
        return _optional_model(Equipment, response, "equipment")

    def update(
        self,
        equipment_id: int,
        name: str,
        category: str,
        description: str,
        status: str,
        image: ImageUpload | None = None,
    ) -> Equipment | None:
        fields = {
            "nombre": name,
            "categoria": category,
            "descripcion": description,
            "estado": EQUIPMENT_STATUS_TO_WIRE.get(status, status),
        }
        files = {"imagen": image} if image else None
        response = self.client.expect_ok(
            self.client.request("PUT", f"/api/Implementos/{int(equipment_id)}", fields=fields, files=files),
            "Unable to update equipment",
        )
        return _optional_model(Equipment, response, "equipment")

    def delete(self, equipment_id: int) -> None:
        self.client.expect_ok(
            self.client.request("DELETE", f"/api/Implementos/{int(equipment_id)}"),
            "Unable to delete equipment",
        )


class UserApi:
    def __init__(self, client: LendingApiClient):
        self.client = client

    def list_all(self) -> list[DirectoryUser]:
        response = self.client.expect_ok(self.client.request("GET", "/api/Auth/usuarios"), "Unable to load users")
        return _parse_list(DirectoryUser, _decode_json(response), "user")

    def get(self, user_id: int) -> DirectoryUser:
        response = self.client.expect_ok(
            self.client.request("GET", f"/api/Auth/usuarios/{int(user_id)}"),
            "Unable to load user",
        )
        return _parse_model(DirectoryUser, _decode_json(response), "user")

    def update(self, user_id: int, changes: dict[str, Any]) -> str:
        response = self.client.expect_ok(
            self.client.request("PUT", f"/api/Auth/usuarios/{int(user_id)}", json_body=changes),
            "Unable to update user",
        )
        return response.text()

    def delete(self, user_id: int) -> str:
        response = self.client.expect_ok(
            self.client.request("DELETE", f"/api/Auth/usuarios/{int(user_id)}"),
            "Unable to delete user",
        )
        return response.text()

    def search(self, term: str) -> list[DirectoryUser]:
        needle = (term or "").strip()
        if not needle:
            return []
        try:
            users = self.list_all()
        except LendingApiError as exc:
            API_LOGGER.warning("User search failed term=%s error=%s", needle, exc)
            return []
        lowered = needle.lower()
        return [
            user
            for user in users
            if needle in str(user.id) or lowered in user.name.lower() or lowered in user.email.lower()
        ]


class LoanApi:
    def __init__(self, client: LendingApiClient):
        self.client = client

    def register(self, request: RegisterLoanRequest) -> str:
        response = self.client.expect_ok(
            self.client.request("POST", "/api/Prestamos/registrar", json_body=request.to_wire()),
            "Unable to register loan",
        )
        return response.text()

    def record_return(self, loan_id: int) -> str:
        response = self.client.expect_ok(
            self.client.request("PUT", f"/api/Prestamos/devolucion/{int(loan_id)}"),
            "Unable to record return",
        )
        return response.text()

    def list_mine(self) -> list[Loan]:
        response = self.client.expect_ok(
            self.client.request("GET", "/api/Prestamos/mis-prestamos"),
            "Unable to load loans",
        )
        return _parse_list(Loan, _decode_json(response), "loan")

    def list_all(self) -> list[Loan]:
        response = self.client.expect_ok(self.client.request("GET", "/api/Prestamos/todos"), "Unable to load loans")
        return _parse_list(Loan, _decode_json(response), "loan")

    def list_for(self, user: ConsoleUser) -> list[Loan]:
        if can(user, "viewAllLoans"):
            return self.list_all()
        return self.list_mine()


def _optional_model(model: type[BaseModel], response: ApiResponse, what: str) -> Any:
    if not response.body.strip() or not response.is_json:
        return None
    return _parse_model(model, _decode_json(response), what)


class LendingApi:
    """Domain clients bound to one session store."""

    def __init__(self, store: SessionStore, base_url: str | None = None, **kwargs: Any):
        self.client = LendingApiClient(store, base_url, **kwargs)
        self.equipment = EquipmentApi(self.client)
        self.users = UserApi(self.client)
        self.loans = LoanApi(self.client)
