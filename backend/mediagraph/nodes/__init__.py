"""Auto-discover all executor modules on import."""
from .registry import NodeRegistry

NodeRegistry.discover("mediagraph.nodes")
