"""Shared model config and base types."""
from pydantic import BaseModel, ConfigDict


class ReimburseModel(BaseModel):
    # Payloads come from LLM output and stored JSON blobs; unknown keys are dropped.
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)
