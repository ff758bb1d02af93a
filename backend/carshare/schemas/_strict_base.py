"""Schema baselines: strict request bodies, lenient processor payloads."""

from pydantic import BaseModel, ConfigDict


class StrictModel(BaseModel):
    """Response DTO base that rejects unknown fields."""

    model_config = ConfigDict(extra="forbid", validate_assignment=True)


class StrictRequestModel(StrictModel):
    """Request DTO base; clients may not send fields the API does not define."""

    model_config = ConfigDict(extra="forbid", validate_assignment=True, str_strip_whitespace=True)


class ProcessorPayload(BaseModel):
    """
    Boundary type for Stripe JSON.

    Stripe adds fields without notice, so unknown keys are ignored rather
    than rejected; only the fields the lifecycle reads are declared.
    """

    model_config = ConfigDict(extra="ignore", populate_by_name=True)
