"""
ConsumerScaler CustomResourceDefinition.
"""

import asyncio
import builtins
import logging
from dataclasses import dataclass, field
from typing import Any

from kubernetes import client
from kubernetes.client.rest import ApiException

from .errors import StoreUnavailableError
from .models import ResourceKind

logger = logging.getLogger(__name__)


@dataclass
class CustomResourceDefinition:
    """Custom Resource Definition specification."""

    name: str
    group: str
    version: str
    kind: str
    plural: str
    scope: str = "Namespaced"
    short_names: builtins.list[str] = field(default_factory=list)
    schema: builtins.dict[str, Any] = field(default_factory=dict)
    additional_printer_columns: builtins.list[builtins.dict[str, Any]] = field(default_factory=list)
    subresources: builtins.dict[str, Any] = field(default_factory=dict)

    def to_manifest(self) -> builtins.dict[str, Any]:
        return {
            "apiVersion": "apiextensions.k8s.io/v1",
            "kind": "CustomResourceDefinition",
            "metadata": {"name": f"{self.plural}.{self.group}"},
            "spec": {
                "group": self.group,
                "versions": [
                    {
                        "name": self.version,
                        "served": True,
                        "storage": True,
                        "schema": {"openAPIV3Schema": self.schema},
                        "additionalPrinterColumns": self.additional_printer_columns,
                        "subresources": self.subresources,
                    }
                ],
                "scope": self.scope,
                "names": {
                    "plural": self.plural,
                    "singular": self.name,
                    "kind": self.kind,
                    "shortNames": self.short_names,
                },
            },
        }


def consumer_scaler_crd() -> CustomResourceDefinition:
    """The ConsumerScaler CRD with its validation schema."""
    coordinates = ResourceKind.CONSUMER_SCALER.coordinates
    return CustomResourceDefinition(
        name="consumerscaler",
        group=coordinates.group,
        version=coordinates.version,
        kind=coordinates.kind,
        plural=coordinates.plural,
        short_names=["cscaler"],
        schema={
            "type": "object",
            "properties": {
                "spec": {
                    "type": "object",
                    "required": ["minReplicas", "lagThreshold", "consumerSpec"],
                    "properties": {
                        "minReplicas": {"type": "integer", "minimum": 1},
                        "lagThreshold": {"type": "integer", "minimum": 0},
                        "consumerSpec": {
                            "type": "object",
                            "required": ["image", "topicName", "containerName"],
                            "properties": {
                                "image": {"type": "string", "minLength": 1},
                                "topicName": {"type": "string", "minLength": 1},
                                "containerName": {"type": "string", "minLength": 1},
                            },
                        },
                    },
                },
                "status": {
                    "type": "object",
                    "properties": {
                        "replicas": {"type": "integer"},
                        "activePods": {"type": "array", "items": {"type": "string"}},
                        "message": {"type": "string"},
                    },
                },
            },
        },
        additional_printer_columns=[
            {"name": "Topic", "type": "string", "jsonPath": ".spec.consumerSpec.topicName"},
            {"name": "Min", "type": "integer", "jsonPath": ".spec.minReplicas"},
            {"name": "Replicas", "type": "integer", "jsonPath": ".status.replicas"},
            {"name": "Message", "type": "string", "jsonPath": ".status.message"},
            {"name": "Age", "type": "date", "jsonPath": ".metadata.creationTimestamp"},
        ],
        subresources={"status": {}},
    )


async def install_crd(
    crd: CustomResourceDefinition | None = None,
    apiextensions_api: client.ApiextensionsV1Api | None = None,
) -> bool:
    """Create the CRD; an existing one counts as success.

    Returns True if the CRD was created, False if it already existed.
    """
    crd = crd or consumer_scaler_crd()
    api = apiextensions_api or client.ApiextensionsV1Api()
    loop = asyncio.get_running_loop()
    try:
        await loop.run_in_executor(None, lambda: api.create_custom_resource_definition(body=crd.to_manifest()))
    except ApiException as e:
        if e.status == 409:
            logger.info(f"CRD {crd.plural}.{crd.group} already exists")
            return False
        raise StoreUnavailableError(f"Failed to create CRD {crd.plural}.{crd.group}: {e.status} {e.reason}") from e

    logger.info(f"Created CRD {crd.plural}.{crd.group}")
    return True
