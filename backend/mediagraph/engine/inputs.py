"""Input resolver: classifies everything wired into a node into typed buckets."""
from dataclasses import dataclass, field
from typing import Any, Iterable

from ..nodes.base import OutputKind
from ..nodes.registry import NodeRegistry
from .graph import Edge, Node

EASE_SETTINGS_HANDLE = "easeCurve"


def is_image_handle(handle: str | None) -> bool:
    if not handle:
        return False
    return handle == "image" or handle.startswith("image-") or "frame" in handle


def is_text_handle(handle: str | None) -> bool:
    if not handle:
        return False
    return handle == "text" or handle.startswith("text-") or "prompt" in handle


@dataclass(frozen=True)
class EaseSettings:
    bezier_handles: tuple[float, float, float, float]
    easing_preset: str | None


@dataclass(frozen=True)
class ConnectedInputs:
    images: tuple[str, ...] = ()
    videos: tuple[str, ...] = ()
    audio: tuple[str, ...] = ()
    text: str | None = None
    model3d: str | None = None
    ease_curve: EaseSettings | None = None
    dynamic_inputs: dict[str, str | list[str]] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "images": list(self.images),
            "videos": list(self.videos),
            "audio": list(self.audio),
            "text": self.text,
            "model3d": self.model3d,
            "easeCurve": (
                {
                    "bezierHandles": list(self.ease_curve.bezier_handles),
                    "easingPreset": self.ease_curve.easing_preset,
                }
                if self.ease_curve else None
            ),
            "dynamicInputs": dict(self.dynamic_inputs),
        }


def _schema_handle_map(target: Node | None) -> dict[str, str]:
    """Map normalized handle ids (image, image-N, text, text-N) to schema names."""
    schema = (target.data.get("inputSchema") if target else None) or []
    mapping: dict[str, str] = {}
    for kind in ("image", "text"):
        entries = [s for s in schema if s.get("type") == kind]
        for i, entry in enumerate(entries):
            mapping[f"{kind}-{i}"] = entry["name"]
            if i == 0:
                mapping[kind] = entry["name"]
    return mapping


def source_output(source: Node, edge: Edge) -> tuple[OutputKind | None, Any]:
    executor_cls = NodeRegistry.lookup(source.type)
    if executor_cls is None:
        return None, None
    return executor_cls.output_value(source.data, edge.source_handle, edge.data)


def resolve_connected_inputs(
    node_id: str,
    nodes: Iterable[Node],
    edges: Iterable[Edge],
) -> ConnectedInputs:
    """Resolve the inputs of `node_id` from the current nodes and edges.

    Edges are visited in (created_at, id) order. Pure read.
    """
    by_id = {n.id: n for n in nodes}
    incoming = sorted(
        (e for e in edges if e.target == node_id),
        key=lambda e: e.sort_key,
    )
    handle_to_schema = _schema_handle_map(by_id.get(node_id))

    images: list[str] = []
    videos: list[str] = []
    audio: list[str] = []
    text: str | None = None
    model3d: str | None = None
    dynamic: dict[str, str | list[str]] = {}
    ease_curve: EaseSettings | None = None
    ease_edge_seen = False

    for edge in incoming:
        source = by_id.get(edge.source)
        if source is None:
            continue

        if edge.target_handle == EASE_SETTINGS_HANDLE:
            if not ease_edge_seen:
                ease_edge_seen = True
                if source.type == "easeCurve":
                    handles = source.data.get("bezierHandles") or (0.42, 0.0, 0.58, 1.0)
                    ease_curve = EaseSettings(
                        bezier_handles=tuple(float(h) for h in handles),
                        easing_preset=source.data.get("easingPreset"),
                    )
            continue

        kind, value = source_output(source, edge)
        if not value:
            continue

        schema_name = handle_to_schema.get(edge.target_handle or "")
        if schema_name:
            existing = dynamic.get(schema_name)
            if existing is None:
                dynamic[schema_name] = value
            elif isinstance(existing, list):
                existing.append(value)
            else:
                dynamic[schema_name] = [existing, value]

        if kind == OutputKind.MODEL_3D:
            if model3d is None:
                model3d = value
        elif kind == OutputKind.VIDEO:
            videos.append(value)
        elif kind == OutputKind.AUDIO:
            audio.append(value)
        elif kind == OutputKind.TEXT or is_text_handle(edge.target_handle):
            if text is None:
                text = value
        elif is_image_handle(edge.target_handle) or not edge.target_handle:
            images.append(value)

    return ConnectedInputs(
        images=tuple(images),
        videos=tuple(videos),
        audio=tuple(audio),
        text=text,
        model3d=model3d,
        ease_curve=ease_curve,
        dynamic_inputs=dynamic,
    )
