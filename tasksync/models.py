import time
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def now_ms() -> int:
    """Current UTC time as epoch milliseconds"""
    return int(time.time() * 1000)


class OrderMode(str, Enum):
    INSERTION = "insertion"
    ALPHABETICAL = "alphabetical"

    @classmethod
    def from_stored(cls, raw) -> "OrderMode":
        """Map stored values, including the legacy default/alpha names."""
        legacy = {"default": cls.INSERTION, "alpha": cls.ALPHABETICAL}
        if raw in legacy:
            return legacy[raw]
        try:
            return cls(raw)
        except ValueError:
            return cls.INSERTION


class CamelModel(BaseModel):
    """Base model serialized with camelCase keys"""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Task(CamelModel):
    """One entry of an owner's task list"""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    id: int
    text: str
    done: bool = False
    favorite: bool = False
    created_at: int | None = None


class TaskCollection(CamelModel):
    """Unit of persistence and of broadcast for one owner"""

    tasks: list[Task] = Field(default_factory=list)
    order_mode: OrderMode = OrderMode.INSERTION

    def snapshot(self) -> list[dict]:
        return [t.model_dump(by_alias=True) for t in self.tasks]

    def to_disk(self) -> dict:
        return {"tasks": self.snapshot(), "orderMode": self.order_mode.value}


class TaskCreate(BaseModel):
    """Schema for creating a task"""

    text: str = ""


class OrderModeUpdate(CamelModel):
    order_mode: str | None = None


class LoginRequest(BaseModel):
    password: str | None = None


class LoginResponse(CamelModel):
    token: str
    is_new_owner: bool
    message: str


class CredentialRecord(CamelModel):
    """Proof material and metadata stored for one owner key"""

    created_at: int = Field(default_factory=now_ms)
    password_hash: str | None = None
    oauth_provider: str | None = None
    email: str | None = None
    name: str | None = None
    picture: str | None = None


class Session(CamelModel):
    token: str = Field(exclude=True)
    owner_key: str
    created_at: int = Field(default_factory=now_ms)

    def age_ms(self, now: int) -> int:
        return now - self.created_at


class OAuthProfile(BaseModel):
    provider: str
    user_id: str
    email: str | None = None
    name: str | None = None
    picture: str | None = None
