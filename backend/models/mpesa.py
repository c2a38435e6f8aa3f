"""
Inbound M-Pesa webhook payloads.

Each callback type is its own model with explicit required fields. Routes
validate at the boundary and acknowledge (without mutating anything) when a
payload does not fit.
"""

from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class _GatewayModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")


# -------------------------------------------------
# STK PUSH (collection) CALLBACK
# -------------------------------------------------

class CallbackItem(_GatewayModel):
    name: str = Field(..., alias="Name")
    value: Any = Field(None, alias="Value")


class CallbackMetadata(_GatewayModel):
    items: List[CallbackItem] = Field(default_factory=list, alias="Item")

    @field_validator("items", mode="before")
    @classmethod
    def _wrap_single(cls, value):
        if isinstance(value, dict):
            return [value]
        return value or []


class StkCallback(_GatewayModel):
    merchant_request_id: Optional[str] = Field(None, alias="MerchantRequestID")
    checkout_request_id: str = Field(..., alias="CheckoutRequestID", min_length=1)
    result_code: int = Field(..., alias="ResultCode")
    result_desc: str = Field("", alias="ResultDesc")
    callback_metadata: Optional[CallbackMetadata] = Field(None, alias="CallbackMetadata")

    def metadata(self, name: str):
        """Look up a metadata value by name; position is not stable."""
        if not self.callback_metadata:
            return None
        for item in self.callback_metadata.items:
            if item.name == name:
                return item.value
        return None


def parse_stk_callback(payload: dict) -> StkCallback:
    body = (payload or {}).get("Body")
    if isinstance(body, dict) and isinstance(body.get("stkCallback"), dict):
        return StkCallback.model_validate(body["stkCallback"])
    return StkCallback.model_validate(payload or {})


# -------------------------------------------------
# B2C (disbursement) RESULT / TIMEOUT
# -------------------------------------------------

class ResultParameter(_GatewayModel):
    key: str = Field(..., alias="Key")
    value: Any = Field(None, alias="Value")


class ResultParameters(_GatewayModel):
    items: List[ResultParameter] = Field(default_factory=list, alias="ResultParameter")

    @field_validator("items", mode="before")
    @classmethod
    def _wrap_single(cls, value):
        if isinstance(value, dict):
            return [value]
        return value or []


class B2CResult(_GatewayModel):
    result_type: Optional[int] = Field(None, alias="ResultType")
    result_code: int = Field(..., alias="ResultCode")
    result_desc: str = Field("", alias="ResultDesc")
    originator_conversation_id: str = Field(..., alias="OriginatorConversationID", min_length=1)
    conversation_id: Optional[str] = Field(None, alias="ConversationID")
    transaction_id: Optional[str] = Field(None, alias="TransactionID")
    result_parameters: Optional[ResultParameters] = Field(None, alias="ResultParameters")

    def parameter(self, key: str):
        if self.result_parameters:
            for param in self.result_parameters.items:
                if param.key == key:
                    return param.value
        # Some gateway versions flatten the parameters onto the result itself.
        return (self.model_extra or {}).get(key)


class B2CTimeout(_GatewayModel):
    originator_conversation_id: str = Field(..., alias="OriginatorConversationID", min_length=1)
    conversation_id: Optional[str] = Field(None, alias="ConversationID")
    result_code: Optional[int] = Field(None, alias="ResultCode")
    result_desc: Optional[str] = Field(None, alias="ResultDesc")


def parse_b2c_result(payload: dict) -> B2CResult:
    result = (payload or {}).get("Result")
    return B2CResult.model_validate(result if isinstance(result, dict) else payload or {})


def parse_b2c_timeout(payload: dict) -> B2CTimeout:
    result = (payload or {}).get("Result")
    return B2CTimeout.model_validate(result if isinstance(result, dict) else payload or {})
