import base64
import email.message
import io
import json
import urllib.error
import urllib.parse


API_BASE = "http://lending.test"


def make_token(claims) -> str:
    def _segment(payload) -> str:
        raw = json.dumps(payload).encode("utf-8")
        return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")

    return f"{_segment({'alg': 'HS256', 'typ': 'JWT'})}.{_segment(claims)}.signature"


def equipment_row(item_id, name, status="Disponible", category="Football", code=None):
    return {
        "id": item_id,
        "codigo": code or f"EQ-{item_id:03d}",
        "nombre": name,
        "categoria": category,
        "descripcion": "",
        "imagenUrl": None,
        "estado": status,
    }


def loan_row(loan_id, equipment, status="Activo", loaned="2025-03-01T10:00:00", due="2025-03-05T10:00:00", user_id=3):
    return {
        "id": loan_id,
        "usuarioId": user_id,
        "implementoId": equipment["id"],
        "fechaPrestamo": loaned,
        "fechaDevolucionProgramada": due,
        "fechaDevolucionReal": None,
        "estado": status,
        "implemento": equipment,
    }


class FakeResponse:
    def __init__(self, status, body=b"", content_type="application/json"):
        self.status = status
        self._body = body
        self.headers = {"Content-Type": content_type}

    def read(self):
        return self._body

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        return False


class FakeOpener:
    """Stands in for urllib.request.urlopen, routing on (method, path)."""

    def __init__(self):
        self.routes = {}
        self.requests = []

    def add(self, method, path, status=200, payload=None, text=None, content_type=None):
        if text is not None:
            body = text.encode("utf-8")
            content_type = content_type or "text/plain; charset=utf-8"
        else:
            body = json.dumps(payload).encode("utf-8") if payload is not None else b""
            content_type = content_type or "application/json; charset=utf-8"
        self.routes[(method, path)] = (status, body, content_type)

    def calls(self, method, path):
        return [
            request
            for request in self.requests
            if request.get_method() == method and urllib.parse.urlsplit(request.full_url).path == path
        ]

    def __call__(self, request, timeout=None):
        self.requests.append(request)
        key = (request.get_method(), urllib.parse.urlsplit(request.full_url).path)
        if key not in self.routes:
            raise urllib.error.URLError(f"no fake route for {key}")
        status, body, content_type = self.routes[key]
        if status >= 400:
            headers = email.message.Message()
            headers["Content-Type"] = content_type
            raise urllib.error.HTTPError(request.full_url, status, "error", headers, io.BytesIO(body))
        return FakeResponse(status, body, content_type)


class FakeDb:
    def __init__(self):
        self.added = []
        self.commits = 0
        self.rollbacks = 0

    def add(self, value):
        self.added.append(value)

    def commit(self):
        self.commits += 1

    def rollback(self):
        self.rollbacks += 1

    def execute(self, *args, **kwargs):
        added = list(self.added)

        class _Result:
            def scalars(self_inner):
                return self_inner

            def all(self_inner):
                return list(reversed(added))

        return _Result()

    def actions(self):
        return [row.Action for row in self.added]
