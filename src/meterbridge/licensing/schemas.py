"""Pydantic schemas for license activation."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class LicenseActivationRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    installation_identifier: str = Field(..., alias="installationIdentifier", min_length=1)
    license: str = Field(..., min_length=1)
    version: str = Field(..., min_length=1)
    feature_ids: list[str] = Field(default_factory=list, alias="featureIds")
    user_count: int = Field(1, alias="userCount", ge=0)
    is_first_activation: bool = Field(False, alias="isFirstActivation")


class LicenseActivationResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    license: str
    feature_ids: list[str] = Field(alias="featureIds")
    expiration_date: datetime = Field(alias="expirationDate")
