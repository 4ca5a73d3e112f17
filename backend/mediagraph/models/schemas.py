"""Pydantic schemas for API request/response models.

Wire names are camelCase, matching the graph format the editor stores.
"""
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class EdgeSchema(CamelModel):
    id: str
    source: str
    target: str
    source_handle: str | None = None
    target_handle: str | None = None
    created_at: float | None = None
    data: dict[str, Any] = Field(default_factory=dict)


class NodeSchema(CamelModel):
    id: str
    type: str
    data: dict[str, Any] = Field(default_factory=dict)
    position: dict[str, float] = Field(default_factory=dict)


class GraphSchema(CamelModel):
    nodes: list[NodeSchema]
    edges: list[EdgeSchema] = Field(default_factory=list)


class ExecuteRequest(CamelModel):
    graph: GraphSchema
    provider_settings: dict[str, Any] = Field(default_factory=dict)
    generations_path: str | None = None
    save_directory_path: str | None = None
    session_id: str | None = None
    start_from_node_id: str | None = None
    max_concurrent_calls: int | None = None


class ExecuteResponse(CamelModel):
    execution_id: str
    status: str


class NodeDefinitionResponse(CamelModel):
    node_type: str
    display_name: str
    category: str
    description: str
    output_kind: str | None = None
    default_data: dict[str, Any] = Field(default_factory=dict)


class WorkflowStatusResponse(CamelModel):
    execution_id: str
    status: str
    current_node_ids: list[str] = Field(default_factory=list)
    nodes: dict[str, dict[str, Any]] = Field(default_factory=dict)
    incurred_cost: float = 0.0
    error: str | None = None
    failed_node: str | None = None
    pending_saves: list[str] = Field(default_factory=list)
