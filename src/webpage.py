"""
WebPage Operator - Serves a static HTML page described by a WebPage resource.

For each WebPage the operator keeps three secondaries in sync, in order:

1. ConfigMap ``<name>-html`` holding ``index.html``
2. Deployment ``<name>`` running nginx with the ConfigMap mounted
3. Service ``<name>`` exposing the Deployment's pods

When the HTML changes only the ConfigMap is rewritten, and the pods are
deleted so nginx restarts with the new content.
"""

import logging
from typing import Any, Dict, Optional

from association import PrimaryToSecondaryMapper, SecondaryToPrimaryMapper
from config import WebPageConfig
from context import Context
from dependent import DependentResourceConfig, StoreDependentResource
from reconciler import (
    DependentResourcesReconciler,
    Precondition,
    PreconditionResult,
    ReconcileError,
)
from resources import Resource, ResourceID
from store import ResourceStore
from update_control import ErrorStatusUpdateControl
from validation import schema_precondition

logger = logging.getLogger(__name__)

WEBPAGE_KIND = "WebPage"
LOW_LEVEL_LABEL = "low-level"
CONFIG_MAP_SUFFIX = "-html"

WEBPAGE_SPEC_SCHEMA = {
    "type": "object",
    "required": ["html"],
    "properties": {
        "html": {"type": "string"},
    },
}


def config_map_name(webpage: Resource) -> str:
    return f"{webpage.name}{CONFIG_MAP_SUFFIX}"


def deployment_name(webpage: Resource) -> str:
    return webpage.name


def service_name(webpage: Resource) -> str:
    return webpage.name


def config_map_id(primary_id: ResourceID) -> ResourceID:
    """ConfigMap identity for a WebPage identity; depends on nothing else."""
    return ResourceID(
        name=f"{primary_id.name}{CONFIG_MAP_SUFFIX}", namespace=primary_id.namespace
    )


def webpage_id_for_config_map(secondary_id: ResourceID) -> Optional[ResourceID]:
    """Inverse of config_map_id(); None for names it never produces."""
    name = secondary_id.name
    if not name.endswith(CONFIG_MAP_SUFFIX) or name == CONFIG_MAP_SUFFIX:
        return None
    return ResourceID(
        name=name[: -len(CONFIG_MAP_SUFFIX)], namespace=secondary_id.namespace
    )


def error_marker_precondition(marker: str) -> Precondition:
    """Fail the pass when the page's HTML contains ``marker``."""

    def check(primary: Resource, context: Context) -> PreconditionResult:
        if marker and marker in primary.spec.get("html", ""):
            return PreconditionResult.fail("Simulating error")
        return PreconditionResult.ok()

    return check


class ConfigMapDependentResource(StoreDependentResource):
    """The ConfigMap carrying the page's HTML."""

    kind = "ConfigMap"

    def __init__(
        self, store: ResourceStore, config: Optional[DependentResourceConfig] = None
    ):
        super().__init__(store, config)
        self._mapper = PrimaryToSecondaryMapper(
            config_map_id, webpage_id_for_config_map
        )

    def desired(self, primary: Resource, context: Context) -> Resource:
        return Resource(
            kind=self.kind,
            name=config_map_name(primary),
            namespace=primary.namespace,
            data={"index.html": primary.spec["html"]},
        )

    def associated_secondary_id(self, primary: Resource) -> ResourceID:
        return self._mapper.secondary_id(primary.resource_id)

    def association_mapper(self, primary_kind: str) -> SecondaryToPrimaryMapper:
        return self._mapper

    async def update(
        self, actual: Resource, desired: Resource, primary: Resource, context: Context
    ) -> Resource:
        updated = await super().update(actual, desired, primary, context)
        namespace = actual.namespace
        logger.info(f"Restarting pods because HTML has changed in {namespace}")
        await self.store.delete_by_selector(
            "Pod", namespace, f"app={deployment_name(primary)}"
        )
        return updated


class DeploymentDependentResource(StoreDependentResource):
    """nginx Deployment serving the ConfigMap's content."""

    kind = "Deployment"

    def __init__(
        self,
        store: ResourceStore,
        config_maps: ConfigMapDependentResource,
        image: str = "nginx:1.17.0",
        config: Optional[DependentResourceConfig] = None,
    ):
        super().__init__(store, config)
        self._config_maps = config_maps
        self.image = image

    def desired(self, primary: Resource, context: Context) -> Resource:
        config_map = self._config_maps.get_resource(primary, context)
        if config_map is None:
            raise ReconcileError(
                f"ConfigMap for {primary.resource_id} has not been reconciled"
            )

        name = deployment_name(primary)
        return Resource(
            kind=self.kind,
            name=name,
            namespace=primary.namespace,
            spec={
                "replicas": 1,
                "selector": {"matchLabels": {"app": name}},
                "template": {
                    "metadata": {"labels": {"app": name}},
                    "spec": {
                        "containers": [
                            {
                                "name": "nginx",
                                "image": self.image,
                                "ports": [{"containerPort": 80}],
                                "volumeMounts": [
                                    {
                                        "name": "html-volume",
                                        "mountPath": "/usr/share/nginx/html",
                                    }
                                ],
                            }
                        ],
                        "volumes": [
                            {
                                "name": "html-volume",
                                "configMap": {"name": config_map.name},
                            }
                        ],
                    },
                },
            },
        )


class ServiceDependentResource(StoreDependentResource):
    """NodePort Service in front of the Deployment's pods."""

    kind = "Service"

    def __init__(
        self,
        store: ResourceStore,
        deployments: DeploymentDependentResource,
        config: Optional[DependentResourceConfig] = None,
    ):
        super().__init__(store, config)
        self._deployments = deployments

    def desired(self, primary: Resource, context: Context) -> Resource:
        deployment = self._deployments.get_resource(primary, context)
        if deployment is None:
            raise ReconcileError(
                f"Deployment for {primary.resource_id} has not been reconciled"
            )

        return Resource(
            kind=self.kind,
            name=service_name(primary),
            namespace=primary.namespace,
            spec={
                "type": "NodePort",
                "selector": {"app": deployment.name},
                "ports": [{"protocol": "TCP", "port": 80, "targetPort": 80}],
            },
        )


class WebPageReconciler(DependentResourcesReconciler):
    """Reconciles WebPage resources through their three dependents."""

    def __init__(self, store: ResourceStore, config: Optional[WebPageConfig] = None):
        self.config = config or WebPageConfig()
        dependent_config = DependentResourceConfig(
            label_selector=self.config.label_selector
        )

        self.config_maps = ConfigMapDependentResource(store, dependent_config)
        self.deployments = DeploymentDependentResource(
            store, self.config_maps, image=self.config.image, config=dependent_config
        )
        self.services = ServiceDependentResource(
            store, self.deployments, config=dependent_config
        )

        super().__init__(
            [self.config_maps, self.deployments, self.services],
            preconditions=[
                schema_precondition(WEBPAGE_SPEC_SCHEMA),
                error_marker_precondition(self.config.error_marker),
            ],
        )

    @property
    def primary_kind(self) -> str:
        return WEBPAGE_KIND

    def build_status(self, primary: Resource, context: Context) -> Dict[str, Any]:
        config_map = self.config_maps.get_resource(primary, context)
        return {
            "configRef": config_map.name if config_map else None,
            "healthy": True,
            "errorMessage": None,
        }

    def update_error_status(
        self, primary: Resource, context: Context, error: BaseException
    ) -> ErrorStatusUpdateControl:
        control = super().update_error_status(primary, context, error)
        control.resource.status["healthy"] = False
        return control
