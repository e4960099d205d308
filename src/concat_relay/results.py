from pydantic import BaseModel, Field
from typing import List, Literal, Optional

ItemState = Literal["succeeded", "soft_failed", "hard_failed"]
RunStatus = Literal["ok", "rejected", "aborted", "disconnected"]


class ItemResult(BaseModel):
    url: str
    state: ItemState
    http_status: int = 200
    error_code: Optional[str] = None
    error_message: Optional[str] = None


class ConcatResult(BaseModel):
    status: RunStatus
    http_status: int = 200
    items: List[ItemResult] = Field(default_factory=list)

    # failure fields
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    failed_url: Optional[str] = None

    @property
    def soft_failures(self) -> List[ItemResult]:
        return [i for i in self.items if i.state == "soft_failed"]
