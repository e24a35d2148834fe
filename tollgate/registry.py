"""Loading, validation and caching of workflow definitions."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

import yaml
from pydantic import BaseModel, Field

from .errors import DefinitionInvalid, DefinitionNotFound
from .models import WorkflowDefinition
from .persistence import WorkflowRepository

logger = logging.getLogger(__name__)


class LoadReport(BaseModel):
    """Outcome of a registry (re)load."""

    loaded: List[str] = Field(default_factory=list)
    rejected: Dict[str, str] = Field(default_factory=dict)


def version_key(version: str) -> Tuple[Tuple[int, Any], ...]:
    """Sort key ordering ``"2" < "10"`` and ``"1.2" < "1.10"``."""
    parts = []
    for part in str(version).split("."):
        parts.append((0, int(part)) if part.isdigit() else (1, part))
    return tuple(parts)


def load_definition_file(path: Union[str, Path]) -> List[WorkflowDefinition]:
    """Parse a YAML or JSON file in the authoring format.

    The file may hold a single definition, a list of definitions, or a
    mapping with a ``workflows`` list.
    """
    path = Path(path)
    with open(path) as f:
        loaded = yaml.safe_load(f)
    if isinstance(loaded, Mapping) and "workflows" in loaded:
        loaded = loaded["workflows"]
    documents = loaded if isinstance(loaded, list) else [loaded]
    definitions = []
    for document in documents:
        if not isinstance(document, Mapping):
            raise DefinitionInvalid(
                f"{path} does not contain a workflow definition mapping",
                details={"path": str(path)},
            )
        definitions.append(WorkflowDefinition.from_document(document))
    return definitions


class WorkflowDefinitionRegistry:
    """Cache of validated, immutable definitions.

    ``_latest`` maps a workflow id to its newest version and ``_versions``
    keeps every ``(id, version)`` seen so far, so instances pinned to an
    older version keep resolving after a reload. Both maps are replaced, never
    mutated in place, which makes each swap atomic for readers.
    """

    def __init__(self, repository: WorkflowRepository) -> None:
        self._repository = repository
        self._latest: Dict[str, WorkflowDefinition] = {}
        self._versions: Dict[Tuple[str, str], WorkflowDefinition] = {}

    async def load_definitions(self) -> LoadReport:
        """(Re)load every active definition from the repository."""
        documents = await self._repository.load_active_definitions()
        report = LoadReport()
        latest: Dict[str, WorkflowDefinition] = {}
        versions = dict(self._versions)
        for document in documents:
            label = f"{document.get('id', '<unknown>')}@{document.get('version', '?')}"
            try:
                definition = WorkflowDefinition.from_document(document)
            except DefinitionInvalid as e:
                logger.warning(f"Rejected workflow definition {label}: {e.message}")
                report.rejected[label] = e.message
                continue
            versions[(definition.id, definition.version)] = definition
            current = latest.get(definition.id)
            if current is None or version_key(definition.version) >= version_key(current.version):
                latest[definition.id] = definition
            report.loaded.append(label)

        self._versions = versions
        self._latest = latest
        logger.info(
            f"Loaded {len(latest)} workflow definitions ({len(report.rejected)} rejected)"
        )
        return report

    async def register(
        self,
        definition: Union[WorkflowDefinition, Mapping[str, Any]],
        persist: bool = True,
    ) -> WorkflowDefinition:
        """Validate, optionally persist, and expose a definition."""
        if isinstance(definition, Mapping):
            definition = WorkflowDefinition.from_document(definition)
        else:
            definition.check()
        if persist:
            await self._repository.save_definition(definition)

        versions = dict(self._versions)
        versions[(definition.id, definition.version)] = definition
        latest = dict(self._latest)
        current = latest.get(definition.id)
        if definition.active:
            if current is None or version_key(definition.version) >= version_key(current.version):
                latest[definition.id] = definition
        elif current is not None and current.version == definition.version:
            del latest[definition.id]
        self._versions = versions
        self._latest = latest
        logger.info(f"Registered workflow definition {definition.id}@{definition.version}")
        return definition

    async def register_file(
        self, path: Union[str, Path], persist: bool = True
    ) -> List[WorkflowDefinition]:
        return [await self.register(d, persist=persist) for d in load_definition_file(path)]

    def get_definition(
        self, workflow_id: str, version: Optional[str] = None
    ) -> WorkflowDefinition:
        if version is None:
            definition = self._latest.get(workflow_id)
        else:
            definition = self._versions.get((workflow_id, version))
        if definition is None:
            label = workflow_id if version is None else f"{workflow_id}@{version}"
            raise DefinitionNotFound(
                f"Workflow definition not found: {label}",
                details={"workflow_id": workflow_id, "version": version},
            )
        return definition

    def list_definitions(self) -> List[WorkflowDefinition]:
        return [self._latest[k] for k in sorted(self._latest)]

    def __contains__(self, workflow_id: object) -> bool:
        return workflow_id in self._latest
