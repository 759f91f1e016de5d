"""
File-based workflows advertised with image-generation services.

Workflows are JSON files dropped into a directory. Only their identity is
announced (id, name, filename); the contents are not parsed here.
"""

import json
import logging
from pathlib import Path
from typing import List

from ..relay.models import WorkflowSummary

logger = logging.getLogger(__name__)


class WorkflowStore:
    """Lists workflow files in a directory."""

    def __init__(self, workflows_dir: str):
        self.workflows_dir = Path(workflows_dir)

    def list_workflows(self) -> List[WorkflowSummary]:
        if not self.workflows_dir.is_dir():
            return []

        workflows = []
        for path in sorted(self.workflows_dir.glob("*.json")):
            name = path.stem.replace("_", " ").replace("-", " ").title()
            try:
                data = json.loads(path.read_text(encoding="utf-8"))
                if isinstance(data, dict):
                    meta = data.get("_meta") or {}
                    name = meta.get("title") or data.get("name") or name
            except (OSError, json.JSONDecodeError) as e:
                logger.warning(f"workflow_unreadable: path={path} error={e}")
                continue
            workflows.append(WorkflowSummary(id=path.stem, name=str(name), filename=path.name))
        return workflows
