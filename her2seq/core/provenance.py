"""
Provenance tracking for the HER2 differential expression workflow.

Records W3C-PROV-like activities (what ran, with which parameters, producing
which files) together with the analysis IR of each step, so a run can be
audited afterwards and replayed as a notebook.
"""

import datetime
import hashlib
import importlib.metadata
import json
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import anndata
import numpy
import pandas
import scipy
import sklearn

from her2seq.core.analysis_ir import AnalysisStep
from her2seq.core.exceptions import ProvenanceError
from her2seq.utils.logger import get_logger
from her2seq.version import __version__

logger = get_logger(__name__)

FORMAT_BY_SUFFIX = {
    ".h5ad": "h5ad",
    ".csv": "csv",
    ".tsv": "tsv",
    ".txt": "txt",
    ".json": "json",
    ".html": "html",
    ".png": "png",
    ".svg": "svg",
    ".ipynb": "ipynb",
}


class ProvenanceTracker:
    """
    W3C-PROV-like provenance tracking system.

    Activities are stored as plain dicts (JSON-ready); the IR of each
    activity is stored in its serialised form under the ``ir`` key.
    """

    def __init__(self, namespace: str = "her2seq"):
        self.namespace = namespace
        self.activities: List[Dict[str, Any]] = []
        self.entities: Dict[str, Dict[str, Any]] = {}
        self.agents: Dict[str, Dict[str, Any]] = {}

    def create_activity(
        self,
        activity_type: str,
        agent: str,
        inputs: Optional[List[Dict[str, Any]]] = None,
        outputs: Optional[List[Dict[str, Any]]] = None,
        parameters: Optional[Dict[str, Any]] = None,
        description: Optional[str] = None,
        ir: Optional[AnalysisStep] = None,
    ) -> str:
        """
        Create a new provenance activity record.

        Args:
            activity_type: Type of activity (e.g., 'filter_by_expr', 'voom')
            agent: Component performing the activity (e.g., 'LimmaVoomService')
            inputs: List of input entities
            outputs: List of output entities
            parameters: Parameters used in the activity
            description: Human-readable description
            ir: Optional AnalysisStep used to replay the activity

        Returns:
            str: Unique activity ID
        """
        activity_id = f"{self.namespace}:activity:{uuid.uuid4()}"

        activity = {
            "id": activity_id,
            "type": activity_type,
            "agent": agent,
            "timestamp": datetime.datetime.now(datetime.timezone.utc).isoformat(),
            "inputs": inputs or [],
            "outputs": outputs or [],
            "parameters": _jsonable(parameters or {}),
            "description": description,
            "ir": ir.to_dict() if ir is not None else None,
            "software_versions": self._get_software_versions(),
        }

        self.activities.append(activity)
        logger.debug(f"Created activity: {activity_id} ({activity_type})")

        return activity_id

    def create_entity(
        self,
        entity_type: str,
        uri: Union[str, Path] = None,
        checksum: Optional[str] = None,
        format: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> str:
        """
        Create a new provenance entity record.

        Args:
            entity_type: Type of entity (e.g., 'dataset', 'plot', 'table')
            uri: URI or path to the entity
            checksum: Optional checksum; computed for existing files
            format: File format; detected from the suffix when omitted
            metadata: Additional metadata

        Returns:
            str: Unique entity ID
        """
        entity_id = f"{self.namespace}:entity:{uuid.uuid4()}"

        if uri is not None:
            if checksum is None:
                checksum = self._calculate_checksum(uri)
            if format is None:
                format = FORMAT_BY_SUFFIX.get(Path(uri).suffix.lower(), "unknown")

        self.entities[entity_id] = {
            "id": entity_id,
            "type": entity_type,
            "uri": str(uri) if uri else None,
            "checksum": checksum,
            "format": format,
            "metadata": _jsonable(metadata or {}),
            "created": datetime.datetime.now(datetime.timezone.utc).isoformat(),
        }
        logger.debug(f"Created entity: {entity_id} ({entity_type})")

        return entity_id

    def create_agent(self, name: str, version: Optional[str] = None) -> str:
        """Register a software agent (idempotent) and return its ID."""
        agent_id = f"{self.namespace}:agent:{name.replace(' ', '_').lower()}"
        if agent_id not in self.agents:
            self.agents[agent_id] = {
                "id": agent_id,
                "name": name,
                "type": "software",
                "version": version or __version__,
            }
        return agent_id

    def log_step(
        self,
        tool_name: str,
        agent: str,
        parameters: Dict[str, Any],
        stats: Optional[Dict[str, Any]] = None,
        ir: Optional[AnalysisStep] = None,
        description: Optional[str] = None,
    ) -> str:
        """
        Record one workflow step.

        The step's statistics are attached as an output entity so the
        provenance file shows what each step produced.
        """
        self.create_agent(agent)
        outputs = []
        if stats:
            entity_id = self.create_entity("result", metadata=stats)
            outputs.append({"entity": entity_id, "role": "statistics"})

        return self.create_activity(
            activity_type=tool_name,
            agent=agent,
            outputs=outputs,
            parameters=parameters,
            description=description or (ir.description if ir else None),
            ir=ir,
        )

    def add_to_anndata(self, adata: anndata.AnnData) -> anndata.AnnData:
        """Store the provenance record (as JSON text) inside ``adata.uns``."""
        adata.uns["provenance"] = json.dumps(self.to_dict())
        return adata

    def to_dict(self) -> Dict[str, Any]:
        return {
            "namespace": self.namespace,
            "activities": self.activities,
            "entities": self.entities,
            "agents": self.agents,
        }

    def from_dict(self, data: Dict[str, Any]) -> None:
        self.namespace = data.get("namespace", self.namespace)
        self.activities = data.get("activities", [])
        self.entities = data.get("entities", {})
        self.agents = data.get("agents", {})

    def save(self, path: Union[str, Path]) -> Path:
        """
        Write the provenance record as JSON.

        Raises:
            ProvenanceError: If the file cannot be written
        """
        path = Path(path)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "w") as f:
                json.dump(self.to_dict(), f, indent=2)
        except (OSError, TypeError) as e:
            raise ProvenanceError(
                f"Failed to write provenance to {path}: {e}", {"path": str(path)}
            ) from e
        logger.info(f"Provenance written to {path} ({len(self.activities)} activities)")
        return path

    @classmethod
    def load(cls, path: Union[str, Path]) -> "ProvenanceTracker":
        with open(path) as f:
            data = json.load(f)
        tracker = cls(namespace=data.get("namespace", "her2seq"))
        tracker.from_dict(data)
        return tracker

    def _calculate_checksum(self, path: Union[str, Path]) -> Optional[str]:
        """Calculate SHA256 checksum of a file."""
        path = Path(path)
        if not path.is_file():
            return None

        sha256_hash = hashlib.sha256()
        with open(path, "rb") as f:
            for chunk in iter(lambda: f.read(65536), b""):
                sha256_hash.update(chunk)
        return sha256_hash.hexdigest()

    def _get_software_versions(self) -> Dict[str, str]:
        """Get versions of key software packages."""
        versions = {
            "her2seq": __version__,
            "anndata": anndata.__version__,
            "numpy": numpy.__version__,
            "pandas": pandas.__version__,
            "scipy": scipy.__version__,
            "scikit-learn": sklearn.__version__,
        }
        try:
            versions["rpy2"] = importlib.metadata.version("rpy2")
        except importlib.metadata.PackageNotFoundError:
            pass
        return versions


def _jsonable(value: Any) -> Any:
    """Convert numpy/pandas scalars and containers to plain JSON types."""
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_jsonable(v) for v in value]
    if isinstance(value, numpy.ndarray):
        return [_jsonable(v) for v in value.tolist()]
    if isinstance(value, numpy.generic):
        return _jsonable(value.item())
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, float) and value != value:
        return None
    return value
