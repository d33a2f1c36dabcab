"""In-memory node registry and template repository."""
import json
import logging
import threading
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Union

from pydantic import ValidationError

from fleet_controller.exceptions import TemplateNotFoundError
from fleet_controller.models import Node, Template

logger = logging.getLogger(__name__)


class NodeRegistry:
    """Nodes launched by the controller, keyed by node name."""

    def __init__(self):
        self._nodes: Dict[str, Node] = {}
        self._lock = threading.RLock()

    def register(self, node: Node) -> None:
        with self._lock:
            self._nodes[node.name] = node
        logger.info(f"Registered node {node.name} for labels '{node.label_string}'")

    def connect(self, node: Node, now: Optional[datetime] = None) -> None:
        """Bring a registered node online."""
        with self._lock:
            if node.name not in self._nodes:
                raise KeyError(f"Node {node.name} is not registered")
            node.mark_online(now)
        logger.info(f"Node {node.name} is online")

    def remove(self, name: str) -> Optional[Node]:
        with self._lock:
            node = self._nodes.pop(name, None)
        if node:
            logger.info(f"Removed node {name}")
        return node

    def get(self, name: str) -> Optional[Node]:
        with self._lock:
            return self._nodes.get(name)

    def nodes_by_label(self, label: str) -> List[Node]:
        """Nodes whose label string equals label exactly."""
        with self._lock:
            return [n for n in self._nodes.values() if n.label_string == label]

    def all_nodes(self) -> List[Node]:
        with self._lock:
            return list(self._nodes.values())

    def labels(self) -> List[str]:
        with self._lock:
            return sorted({n.label_string for n in self._nodes.values()})


def count_idle_nodes(registry: NodeRegistry, label: str) -> int:
    """Online nodes with the exact label string and at least one idle executor.

    Provisioning and retention must both count idle capacity this way or they
    will fight each other over the primed target.
    """
    return sum(
        1 for node in registry.nodes_by_label(label)
        if node.is_online and node.has_idle_executor
    )


class TemplateRepository:
    """Read-only collection of templates."""

    def __init__(self, templates: Optional[List[Template]] = None):
        self._templates: List[Template] = list(templates or [])

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "TemplateRepository":
        """Load templates from a JSON file holding a list or {"templates": [...]}."""
        path = Path(path)
        try:
            with open(path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Failed to read templates from {path}: {e}")
            raise

        if isinstance(data, dict):
            data = data.get('templates', [])

        try:
            templates = [Template.model_validate(entry) for entry in data]
        except ValidationError as e:
            logger.error(f"Invalid template definition in {path}: {e}")
            raise

        logger.info(f"Loaded {len(templates)} templates from {path}")
        return cls(templates)

    def templates(self) -> List[Template]:
        return list(self._templates)

    def template_for_label(self, label: Optional[str]) -> Optional[Template]:
        """First template serving the label, or None."""
        for template in self._templates:
            if template.matches(label):
                return template
        return None

    def template_by_name(self, name: str) -> Template:
        for template in self._templates:
            if template.name == name:
                return template
        raise TemplateNotFoundError(f"No such template: {name}")

    def template_for_node(self, node: Node) -> Optional[Template]:
        """Template the node was launched from.

        Falls back to an exact label string match for nodes whose template
        name is unknown.
        """
        for template in self._templates:
            if template.name == node.template_name:
                return template
        for template in self._templates:
            if template.label_string == node.label_string:
                return template
        return None

    def labels(self) -> List[str]:
        """Label strings of the templates, the keys idle nodes are counted under."""
        return sorted({t.label_string for t in self._templates if t.label_string})
