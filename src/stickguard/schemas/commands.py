from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field


class CommandType(str, Enum):
    vibrate = "vibrate"
    beep = "beep"
    led_on = "led_on"
    led_off = "led_off"
    status_check = "status_check"
    reboot = "reboot"


DispatchOutcomeType = Literal["published", "failed"]


class CommandRequest(BaseModel):
    """Body for a single-device command. The command name is checked by the dispatcher."""

    command: str = Field(..., description="One of vibrate|beep|led_on|led_off|status_check|reboot.")
    parameters: Optional[Dict[str, Any]] = Field(default=None, description="Command-specific parameters.")


class BulkCommandRequest(BaseModel):
    device_ids: List[str] = Field(..., alias="deviceIds", min_length=1, max_length=100)
    command: str
    parameters: Optional[Dict[str, Any]] = None


class EmergencyRequest(BaseModel):
    intensity: Literal["low", "medium", "high"] = Field("high", description="Vibration intensity.")
    duration: int = Field(10, ge=1, le=300, description="Duration in seconds for each signal.")


class CommandDispatchOut(BaseModel):
    """Result of publishing one command to one device."""

    device_id: str = Field(..., alias="deviceId")
    command: str
    parameters: Dict[str, Any] = Field(default_factory=dict)
    message_id: Optional[str] = Field(default=None, alias="messageId")
    timestamp: datetime
    success: bool = True
    error: Optional[str] = None


class BatchDispatchResponse(BaseModel):
    """Per-item outcomes of a bulk or emergency dispatch. success means at least one item succeeded."""

    success: bool
    success_count: int = Field(..., alias="successCount")
    failure_count: int = Field(..., alias="failureCount")
    results: List[CommandDispatchOut] = Field(default_factory=list)


class CommandRecordOut(BaseModel):
    """Stored COMMAND_SENT / COMMAND_RECEIVED entry."""

    id: str
    type: Literal["COMMAND_SENT", "COMMAND_RECEIVED"]
    device_id: str = Field(..., alias="deviceId")
    user_id: Optional[str] = Field(default=None, alias="userId")
    command: Optional[str] = None
    parameters: Dict[str, Any] = Field(default_factory=dict)
    message_id: Optional[str] = Field(default=None, alias="messageId")
    timestamp: datetime
    outcome: Optional[DispatchOutcomeType] = None
    error: Optional[str] = None
    response: Dict[str, Any] = Field(default_factory=dict)


class CommandHistoryResponse(BaseModel):
    items: List[CommandRecordOut] = Field(..., description="Command records, newest first.")
    total: int = Field(..., ge=0)


class CommandParameterSpec(BaseModel):
    name: str
    type: str
    options: Optional[List[str]] = None
    default: Any = None
    description: Optional[str] = None


class CommandSpec(BaseModel):
    command: CommandType
    description: str
    parameters: List[CommandParameterSpec] = Field(default_factory=list)


class CommandCatalogResponse(BaseModel):
    items: List[CommandSpec]
