from typing import Literal

from pydantic import BaseModel, ConfigDict


class ConsoleUser(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: int = 0
    name: str
    email: str
    role: Literal["Student", "Admin"] = "Student"


class ConsoleSession(BaseModel):
    token: str
    user: ConsoleUser
