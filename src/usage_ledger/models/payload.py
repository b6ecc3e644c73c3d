"""Tagged union of fetched export payloads."""

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field


class TabularExport(BaseModel):
    """CSV export bytes, routed to the tabular parser."""

    kind: Literal["tabular"] = "tabular"
    content: bytes

    model_config = {"frozen": True}


class StructuredExport(BaseModel):
    """Already-decoded JSON export, routed to the structured normalizer."""

    kind: Literal["structured"] = "structured"
    value: Any

    model_config = {"frozen": True}


ExportPayload = Annotated[Union[TabularExport, StructuredExport], Field(discriminator="kind")]


class FetchResult(BaseModel):
    """What a fetcher hands to the orchestrator."""

    payload: ExportPayload
    headers: dict[str, Any] = Field(default_factory=dict)
    source_url: str | None = None
