from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


EQUIPMENT_STATUSES = ("Available", "Loaned", "Maintenance")
LOAN_STATUSES = ("Active", "Returned", "Overdue")

EQUIPMENT_STATUS_FROM_WIRE = {
    "Disponible": "Available",
    "Prestado": "Loaned",
    "Mantenimiento": "Maintenance",
}
EQUIPMENT_STATUS_TO_WIRE = {value: key for key, value in EQUIPMENT_STATUS_FROM_WIRE.items()}

LOAN_STATUS_FROM_WIRE = {
    "Activo": "Active",
    "Devuelto": "Returned",
    "Retrasado": "Overdue",
}


def _decode_status(raw: Any, mapping: dict[str, str]) -> str:
    value = str(raw or "").strip()
    return mapping.get(value, value)


class Equipment(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: int
    code: str = Field("", alias="codigo")
    name: str = Field("", alias="nombre")
    category: str = Field("", alias="categoria")
    description: Optional[str] = Field("", alias="descripcion")
    imageUrl: Optional[str] = Field(None, alias="imagenUrl")
    status: str = Field("", alias="estado")

    @field_validator("status", mode="before")
    @classmethod
    def _status_from_wire(cls, value: Any) -> str:
        return _decode_status(value, EQUIPMENT_STATUS_FROM_WIRE)

    @field_validator("code", "name", "category", mode="before")
    @classmethod
    def _none_to_empty(cls, value: Any) -> Any:
        return "" if value is None else value


class DirectoryUser(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: int
    name: str = Field("", alias="nombre")
    email: str = ""
    role: str = Field("", alias="rol")

    @field_validator("name", "email", "role", mode="before")
    @classmethod
    def _none_to_empty(cls, value: Any) -> Any:
        return "" if value is None else value


class Loan(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: int
    userId: int = Field(0, alias="usuarioId")
    equipmentId: int = Field(0, alias="implementoId")
    loanDate: datetime = Field(alias="fechaPrestamo")
    scheduledReturnDate: datetime = Field(alias="fechaDevolucionProgramada")
    actualReturnDate: Optional[datetime] = Field(None, alias="fechaDevolucionReal")
    status: str = Field("", alias="estado")
    equipment: Equipment = Field(alias="implemento")
    user: Optional[DirectoryUser] = Field(None, alias="usuario")

    @field_validator("status", mode="before")
    @classmethod
    def _status_from_wire(cls, value: Any) -> str:
        return _decode_status(value, LOAN_STATUS_FROM_WIRE)


class RegisterLoanRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    userId: int = Field(alias="usuarioId")
    equipmentId: int = Field(alias="implementoId")
    scheduledReturnDate: datetime = Field(alias="fechaDevolucionProgramada")
    loanDate: datetime = Field(alias="fechaPrestamo")

    def to_wire(self) -> dict[str, Any]:
        return {
            "usuarioId": self.userId,
            "implementoId": self.equipmentId,
            "fechaDevolucionProgramada": self.scheduledReturnDate.isoformat(),
            "fechaPrestamo": self.loanDate.isoformat(),
        }


class ImageUpload(BaseModel):
    filename: str
    content_type: str = "application/octet-stream"
    content: bytes
