from typing import Sequence, Callable, Optional

from colors import bold

from cluster import ClusterServices
from errors import NoIngressClass, CertificateUnavailable, ResourceConflict
from manifests import relocated_secret_manifest, welcome_config_map_manifest, deployment_manifest, \
    service_manifest, ingress_manifest, ingress_hosts
from tenant import Tenant, ManifestSet, ResourceRef
from util import console, Deadline

DEFAULT_CLASS_ANNOTATION = 'ingressclass.kubernetes.io/is-default-class'


class IngressConfigurator:
    """Wires a tenant's subdomain to a TLS-terminated ingress route.

    Configuration fails closed: without an ingress class or a wildcard certificate, nothing is rendered (and hence
    nothing is applied)."""

    def __init__(self,
                 cluster: ClusterServices,
                 secret_source_namespaces: Sequence[str] = ('cert-manager', 'kube-system'),
                 workload_image: str = 'nginx:stable-alpine') -> None:
        super().__init__()
        self._cluster: ClusterServices = cluster
        self._secret_source_namespaces: Sequence[str] = list(secret_source_namespaces)
        self._workload_image: str = workload_image

    def resolve_ingress_class(self, requested: str = None, deadline: Deadline = None) -> str:
        classes: Sequence[dict] = self._cluster.list_objects('IngressClass', deadline=deadline)
        names: Sequence[str] = [c['metadata']['name'] for c in classes]
        if requested:
            if requested not in names:
                raise NoIngressClass(f"ingress class '{requested}' does not exist in the cluster")
            return requested

        defaults: Sequence[str] = sorted(
            c['metadata']['name'] for c in classes
            if (c['metadata'].get('annotations') or {}).get(DEFAULT_CLASS_ANNOTATION) == 'true')
        if defaults:
            if len(defaults) > 1:
                console().warn(f"Multiple default ingress classes found ({', '.join(defaults)}); "
                               f"using '{defaults[0]}'")
            return defaults[0]
        elif names:
            return names[0]
        else:
            raise NoIngressClass(f"no ingress class is installed in the cluster")

    def check_subdomain(self, tenant: Tenant, deadline: Deadline = None) -> None:
        for ingress in self._cluster.list_objects('Ingress', deadline=deadline):
            metadata: dict = ingress['metadata']
            if tenant.subdomain in ingress_hosts(ingress) and metadata.get('namespace') != tenant.namespace:
                raise ResourceConflict(f"subdomain '{tenant.subdomain}' is already routed by ingress "
                                       f"'{metadata.get('namespace')}/{metadata['name']}'")

    def ensure_tls_secret(self,
                          tenant: Tenant,
                          deadline: Deadline = None,
                          on_created: Callable[[ResourceRef], None] = None) -> str:
        name: str = tenant.cert_secret
        if self._cluster.get_object('Secret', name, tenant.namespace, deadline=deadline) is not None:
            console().info(f":lock: TLS secret '{bold(name)}' found in namespace '{tenant.namespace}'")
            return name

        for source in self._secret_source_namespaces:
            if source == tenant.namespace:
                continue
            secret: Optional[dict] = self._cluster.get_object('Secret', name, source, deadline=deadline)
            if secret is None:
                continue

            if secret.get('type') != 'kubernetes.io/tls':
                console().warn(f"Secret '{source}/{name}' is of type '{secret.get('type')}' "
                               f"(expected 'kubernetes.io/tls')")
            console().info(f":lock: Copying TLS secret '{bold(name)}' from namespace '{source}'...")
            manifest: dict = relocated_secret_manifest(secret, tenant.namespace)
            try:
                self._cluster.create_object(manifest, deadline=deadline)
            except ResourceConflict:
                # created concurrently since we looked; that copy is as good as ours
                pass
            if on_created:
                on_created(ResourceRef.of(manifest))
            return name

        raise CertificateUnavailable(f"TLS secret '{name}' not found in namespace '{tenant.namespace}' nor in any "
                                     f"of: {', '.join(self._secret_source_namespaces)}")

    def render(self, tenant: Tenant, ingress_class: str, secret_name: str) -> ManifestSet:
        return ManifestSet([
            welcome_config_map_manifest(tenant, ingress_class, secret_name),
            deployment_manifest(tenant, self._workload_image),
            service_manifest(tenant),
            ingress_manifest(tenant, ingress_class, secret_name),
        ])

    def configure(self,
                  tenant: Tenant,
                  ingress_class: str = None,
                  deadline: Deadline = None,
                  on_created: Callable[[ResourceRef], None] = None) -> ManifestSet:
        """Resolves the ingress class and TLS secret for the tenant, and renders its workload & ingress manifests."""
        resolved_class: str = self.resolve_ingress_class(ingress_class, deadline=deadline)
        console().info(f":signal_strength: Using ingress class '{bold(resolved_class)}'")
        self.check_subdomain(tenant, deadline=deadline)
        secret_name: str = self.ensure_tls_secret(tenant, deadline=deadline, on_created=on_created)
        return self.render(tenant, resolved_class, secret_name)

    def apply(self,
              manifests: ManifestSet,
              deadline: Deadline = None,
              on_applied: Callable[[ResourceRef], None] = None) -> None:
        for manifest in manifests:
            ref: ResourceRef = ResourceRef.of(manifest)
            console().info(f":rocket: Applying {ref}...")
            self._cluster.apply_object(manifest, deadline=deadline)
            if on_applied:
                on_applied(ref)
