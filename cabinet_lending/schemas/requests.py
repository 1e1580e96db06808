from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class RequestItemDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    catalogItemID: int
    quantity: int = Field(default=1, ge=1)


class CreateRequestDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    stationID: int
    requesterName: str = Field(min_length=1)
    requesterPhone: str = Field(min_length=1)
    callIdentifier: Optional[str] = None
    items: List[RequestItemDto] = Field(min_length=1)


class ManageRequestDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    requestId: int
    action: Literal["approve", "reject", "cancel", "regenerate", "undo_pickup"]
    stationId: int
    actorName: Optional[str] = None
    reason: Optional[str] = None


class VerifyTokenDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    token: str = Field(min_length=1)


class ExtendTokenDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    stationId: int
    minutesToAdd: int = Field(ge=1, le=24 * 60)
    actorName: Optional[str] = None


class ReturnBorrowDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    equipmentStatus: Literal["working", "faulty"] = "working"
    faultyNotes: Optional[str] = None


class ConfirmReturnDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    actorName: Optional[str] = None
