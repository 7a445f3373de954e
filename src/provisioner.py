import os
from datetime import datetime, timezone, timedelta
from pathlib import Path
from typing import Optional, Sequence, Callable

import yaml
from colors import bold, italic, underline
from cryptography.x509.oid import NameOID

from cluster import ClusterServices, ClusterInfo
from errors import ResourceConflict, NotFound, UnknownRole, failing_step
from ingress import IngressConfigurator
from issuer import CertificateIssuer, certificate_expiry, certificate_subject
from manifests import namespace_manifest, developer_role_manifest, role_binding_manifest, collect_differences
from packager import CredentialPackager
from registry import LifecycleRegistry, RegistryEntry
from tenant import Tenant, Credential, ResourceRef, ManifestSet, Role, TENANT_LABEL, validate_username
from util import Logger, console, Deadline, poll, atomic_write

# certificates closer than this to expiry are re-issued instead of reused
RENEWAL_MARGIN: timedelta = timedelta(days=7)


class ProvisionResult:
    """Outcome of a successful provisioning run."""

    def __init__(self, tenant: Tenant, entry: RegistryEntry, kubeconfig_path: Path, manifest_path: Path,
                 access_verified: bool) -> None:
        super().__init__()
        self._tenant: Tenant = tenant
        self._entry: RegistryEntry = entry
        self._kubeconfig_path: Path = kubeconfig_path
        self._manifest_path: Path = manifest_path
        self._access_verified: bool = access_verified

    @property
    def tenant(self) -> Tenant:
        return self._tenant

    @property
    def entry(self) -> RegistryEntry:
        return self._entry

    @property
    def kubeconfig_path(self) -> Path:
        return self._kubeconfig_path

    @property
    def manifest_path(self) -> Path:
        return self._manifest_path

    @property
    def access_verified(self) -> bool:
        return self._access_verified


class TenantProvisioner:
    """Creates and tears down tenant slices: namespace, RBAC, client credentials, ingress and kubeconfig.

    Provisioning is idempotent but not transactional. Every object is recorded in the registry as soon as it exists,
    so a run that fails half-way leaves behind an inventory from which 'deprovision' removes exactly what was
    created, and nothing else."""

    def __init__(self,
                 cluster: ClusterServices,
                 registry: LifecycleRegistry,
                 issuer: CertificateIssuer,
                 configurator: IngressConfigurator,
                 packager: CredentialPackager,
                 provision_timeout: float = 300,
                 issuance_timeout: float = 120,
                 termination_timeout: float = 60,
                 poll_interval: float = 0.5,
                 poll_max_interval: float = 5.0) -> None:
        super().__init__()
        self._cluster: ClusterServices = cluster
        self._registry: LifecycleRegistry = registry
        self._issuer: CertificateIssuer = issuer
        self._configurator: IngressConfigurator = configurator
        self._packager: CredentialPackager = packager
        self._provision_timeout: float = provision_timeout
        self._issuance_timeout: float = issuance_timeout
        self._termination_timeout: float = termination_timeout
        self._poll_interval: float = poll_interval
        self._poll_max_interval: float = poll_max_interval

    @property
    def registry(self) -> LifecycleRegistry:
        return self._registry

    def credentials_dir(self, username: str) -> Path:
        return self._registry.root / username

    def key_path(self, username: str) -> Path:
        return self.credentials_dir(username) / f"{username}.key"

    def csr_path(self, username: str) -> Path:
        return self.credentials_dir(username) / f"{username}.csr"

    def certificate_path(self, username: str) -> Path:
        return self.credentials_dir(username) / f"{username}.crt"

    def kubeconfig_path(self, username: str) -> Path:
        return self.credentials_dir(username) / f"{username}-kubeconfig.yaml"

    def manifest_path(self, username: str) -> Path:
        return self.credentials_dir(username) / f"{username}-ingress.yaml"

    def _recorder(self, username: str) -> Callable[[ResourceRef], None]:
        def record(ref: ResourceRef) -> None:
            self._registry.record(username, [ref])

        return record

    def _poll(self, fetch, is_done, deadline: Deadline):
        return poll(fetch, is_done, deadline, interval=self._poll_interval, max_interval=self._poll_max_interval)

    ####################################################################################################################
    # provisioning
    ####################################################################################################################

    def provision(self, tenant: Tenant, ingress_class: str = None, deadline: Deadline = None) -> ProvisionResult:
        deadline: Deadline = deadline if deadline else Deadline(self._provision_timeout)
        username: str = tenant.username
        record: Callable[[ResourceRef], None] = self._recorder(username)

        with self._registry.lock(username):
            with failing_step('registry check', username):
                tenant = self._check_registry(tenant)
            self._registry.record(username, [], tenant=tenant)

            with Logger(f":file_folder: Namespace '{bold(tenant.namespace)}'", spacious=False):
                with failing_step('namespace creation', username):
                    self._ensure_namespace(tenant, deadline, record)

            with Logger(f":closed_lock_with_key: Access control ({bold(tenant.role.value)})", spacious=False):
                with failing_step('role binding', username):
                    self._ensure_role(tenant, deadline, record)
                    self._ensure_role_binding(tenant, deadline, record)

            with Logger(f":key: Client certificate", spacious=False):
                with failing_step('certificate issuance', username):
                    credential: Credential = self._reuse_credential(tenant)
                    if credential is None:
                        credential = self._issue_credential(tenant, deadline, record)
                    tenant.cert_expiry = credential.expiry
                    self._registry.record(username, [], tenant=tenant)

            with Logger(f":globe_with_meridians: Ingress for '{bold(tenant.subdomain)}'", spacious=False):
                with failing_step('ingress configuration', username):
                    manifest_path: Path = self._configure_ingress(tenant, ingress_class, deadline, record)

            with Logger(f":page_facing_up: Kubeconfig", spacious=False):
                with failing_step('kubeconfig packaging', username):
                    kubeconfig_path: Path = self._package(tenant, credential, deadline, record)
                with failing_step('access verification', username):
                    verified: bool = self._verify_access(tenant, kubeconfig_path, deadline)

            entry: RegistryEntry = self._registry.record(username, [], tenant=tenant)
            return ProvisionResult(tenant=tenant,
                                   entry=entry,
                                   kubeconfig_path=kubeconfig_path,
                                   manifest_path=manifest_path,
                                   access_verified=verified)

    def _check_registry(self, tenant: Tenant) -> Tenant:
        """Rejects tenants that would collide with another registered tenant.

        Returns the tenant to provision: when the username is already registered with the same namespace and domain,
        its original creation time is kept, so re-provisioning behaves as a reconciliation of the same tenant."""
        namespace_owner: Optional[str] = self._registry.owner_of_namespace(tenant.namespace)
        if namespace_owner is not None and namespace_owner != tenant.username:
            raise ResourceConflict(f"namespace '{tenant.namespace}' already belongs to tenant '{namespace_owner}'")

        subdomain_owner: Optional[str] = self._registry.owner_of_subdomain(tenant.subdomain)
        if subdomain_owner is not None and subdomain_owner != tenant.username:
            raise ResourceConflict(f"subdomain '{tenant.subdomain}' already belongs to tenant '{subdomain_owner}'")

        entry: Optional[RegistryEntry] = self._registry.lookup(tenant.username)
        if entry is None or entry.tenant is None:
            return tenant

        existing: Tenant = entry.tenant
        if existing.namespace != tenant.namespace or existing.domain != tenant.domain:
            raise ResourceConflict(f"tenant '{tenant.username}' already exists with namespace '{existing.namespace}' "
                                   f"and domain '{existing.domain}' (deprovision it first to change those)")

        console().info(f":recycle: Tenant '{bold(tenant.username)}' is already registered; reconciling")
        return Tenant(username=tenant.username,
                      domain=tenant.domain,
                      namespace=tenant.namespace,
                      role=tenant.role,
                      cert_secret=tenant.cert_secret,
                      validity_days=tenant.validity_days,
                      created=existing.created,
                      cert_expiry=existing.cert_expiry)

    def _ensure_namespace(self, tenant: Tenant, deadline: Deadline, record: Callable[[ResourceRef], None]) -> None:
        manifest: dict = namespace_manifest(tenant)
        namespace: Optional[dict] = self._cluster.get_object('Namespace', tenant.namespace, deadline=deadline)
        if namespace is None:
            try:
                console().info(f":heavy_plus_sign: Creating namespace '{bold(tenant.namespace)}'...")
                self._cluster.create_object(manifest, deadline=deadline)
                record(ResourceRef.of(manifest))
            except ResourceConflict:
                # someone else created it since we looked; decide ownership from what is actually there
                namespace = self._cluster.get_object('Namespace', tenant.namespace, deadline=deadline)

        if namespace is not None:
            labels: dict = namespace['metadata'].get('labels') or {}
            owner: Optional[str] = labels.get(TENANT_LABEL)
            if owner == tenant.username:
                console().info(f":heavy_check_mark: Namespace '{bold(tenant.namespace)}' already exists")
                record(ResourceRef.of(manifest))
            elif owner is None:
                console().warn(f"Namespace '{tenant.namespace}' already exists and is not managed by this tool; "
                               f"adopting it (it will be kept on deprovisioning)")
            else:
                raise ResourceConflict(f"namespace '{tenant.namespace}' is owned by tenant '{owner}'")

        def phase() -> Optional[str]:
            ns: Optional[dict] = self._cluster.get_object('Namespace', tenant.namespace, deadline=deadline)
            return ns['status'].get('phase') if ns and ns.get('status') else None

        def settled(value: Optional[str]) -> bool:
            if value == 'Terminating':
                raise ResourceConflict(f"namespace '{tenant.namespace}' is being deleted; retry once it is gone")
            return value == 'Active'

        try:
            self._poll(phase, settled, deadline)
        except TimeoutError as e:
            raise ResourceConflict(f"namespace '{tenant.namespace}' did not become active in time") from e

    def _ensure_role(self, tenant: Tenant, deadline: Deadline, record: Callable[[ResourceRef], None]) -> None:
        if tenant.role.builtin:
            if self._cluster.get_object('ClusterRole', tenant.role.value, deadline=deadline) is None:
                raise UnknownRole(f"cluster role '{tenant.role.value}' does not exist in the cluster")
            return

        manifest: dict = developer_role_manifest(tenant)
        existing: Optional[dict] = self._cluster.get_object('Role', Role.DEVELOPER.value, tenant.namespace,
                                                             deadline=deadline)
        if existing is None:
            console().info(f":heavy_plus_sign: Creating role '{bold(Role.DEVELOPER.value)}'...")
            try:
                self._cluster.create_object(manifest, deadline=deadline)
            except ResourceConflict:
                self._cluster.apply_object(manifest, deadline=deadline)
        elif collect_differences(manifest['rules'], existing.get('rules')):
            console().warn(f"Role '{tenant.namespace}/{Role.DEVELOPER.value}' has different rules; overwriting them")
            self._cluster.apply_object(manifest, deadline=deadline)
        else:
            console().info(f":heavy_check_mark: Role '{bold(Role.DEVELOPER.value)}' is up to date")
        record(ResourceRef.of(manifest))

    def _ensure_role_binding(self, tenant: Tenant, deadline: Deadline,
                             record: Callable[[ResourceRef], None]) -> None:
        manifest: dict = role_binding_manifest(tenant)
        existing: Optional[dict] = self._cluster.get_object('RoleBinding', tenant.binding_name, tenant.namespace,
                                                             deadline=deadline)
        if existing is not None and collect_differences(manifest['roleRef'], existing.get('roleRef')):
            # role references are immutable; the binding must be re-created to point elsewhere
            console().info(f":recycle: Re-creating role binding '{bold(tenant.binding_name)}' "
                           f"for role '{tenant.role.value}'...")
            self._cluster.delete_object('RoleBinding', tenant.binding_name, tenant.namespace, deadline=deadline)
            existing = None

        if existing is None:
            console().info(f":heavy_plus_sign: Binding '{bold(tenant.username)}' to "
                           f"{tenant.role.role_kind.lower()} '{bold(tenant.role.value)}'...")
            try:
                self._cluster.create_object(manifest, deadline=deadline)
            except ResourceConflict:
                self._cluster.apply_object(manifest, deadline=deadline)
        elif collect_differences(manifest['subjects'], existing.get('subjects')):
            console().info(f":wrench: Reconciling subjects of role binding '{bold(tenant.binding_name)}'...")
            self._cluster.apply_object(manifest, deadline=deadline)
        else:
            console().info(f":heavy_check_mark: Role binding '{bold(tenant.binding_name)}' is up to date")
        record(ResourceRef.of(manifest))

    def _reuse_credential(self, tenant: Tenant) -> Optional[Credential]:
        """Returns the tenant's existing credential if its files are intact and its certificate is still good."""
        paths: Sequence[Path] = [self.key_path(tenant.username),
                                 self.csr_path(tenant.username),
                                 self.certificate_path(tenant.username)]
        if not all(path.exists() for path in paths):
            return None

        key, csr, certificate = [path.read_bytes() for path in paths]
        try:
            subject = certificate_subject(certificate)
            expiry: datetime = certificate_expiry(certificate)
        except ValueError:
            console().warn(f"Existing certificate of '{tenant.username}' is unreadable; re-issuing")
            return None

        common_names = [a.value for a in subject.get_attributes_for_oid(NameOID.COMMON_NAME)]
        organizations = [a.value for a in subject.get_attributes_for_oid(NameOID.ORGANIZATION_NAME)]
        if common_names != [tenant.username] or organizations != [tenant.role.value]:
            console().info(f":recycle: Existing certificate does not match role '{tenant.role.value}'; re-issuing")
            return None
        elif expiry - RENEWAL_MARGIN <= datetime.now(timezone.utc):
            console().info(f":recycle: Existing certificate expires {expiry.isoformat()}; re-issuing")
            return None

        console().info(f":heavy_check_mark: Reusing certificate (expires {bold(expiry.isoformat())})")
        return Credential(private_key=key, csr=csr, certificate=certificate, expiry=expiry)

    def _issue_credential(self, tenant: Tenant, deadline: Deadline,
                          record: Callable[[ResourceRef], None]) -> Credential:
        credential: Credential = self._issuer.issue(username=tenant.username,
                                                    role=tenant.role,
                                                    validity_days=tenant.validity_days,
                                                    deadline=deadline.sub(self._issuance_timeout),
                                                    on_submitted=record)
        self._write(self.key_path(tenant.username), credential.private_key, record, mode=0o600)
        self._write(self.csr_path(tenant.username), credential.csr, record)
        self._write(self.certificate_path(tenant.username), credential.certificate, record)
        return credential

    def _configure_ingress(self, tenant: Tenant, ingress_class: Optional[str], deadline: Deadline,
                           record: Callable[[ResourceRef], None]) -> Path:
        manifests: ManifestSet = self._configurator.configure(tenant,
                                                              ingress_class=ingress_class,
                                                              deadline=deadline,
                                                              on_created=record)
        self._configurator.apply(manifests, deadline=deadline, on_applied=record)
        path: Path = self.manifest_path(tenant.username)
        self._write(path, yaml.safe_dump_all(manifests.manifests, default_flow_style=False).encode('utf-8'), record)
        return path

    def _package(self, tenant: Tenant, credential: Credential, deadline: Deadline,
                 record: Callable[[ResourceRef], None]) -> Path:
        info: ClusterInfo = self._cluster.cluster_info(deadline=deadline)
        data: bytes = self._packager.package(tenant=tenant,
                                             credential=credential,
                                             cluster_name=info.name,
                                             cluster_endpoint=info.server,
                                             cluster_ca=info.ca_data)
        path: Path = self.kubeconfig_path(tenant.username)
        self._write(path, data, record, mode=0o600)
        return path

    def _verify_access(self, tenant: Tenant, kubeconfig_path: Path, deadline: Deadline) -> bool:
        console().info(f":mag: Verifying access to namespace '{tenant.namespace}'...")
        if self._cluster.can_i(str(kubeconfig_path), 'get', 'pods', tenant.namespace, deadline=deadline):
            console().info(f":heavy_check_mark: '{tenant.username}' can access namespace '{tenant.namespace}'")
            return True
        else:
            console().warn(f"Could not verify that '{tenant.username}' can access namespace '{tenant.namespace}' "
                           f"(the role binding may take a few seconds to propagate)")
            return False

    @staticmethod
    def _write(path: Path, data: bytes, record: Callable[[ResourceRef], None], mode: int = 0o644) -> None:
        with atomic_write(path, mode=mode) as f:
            f.write(data)
        record(ResourceRef.file(str(path)))
        console().info(f":floppy_disk: Wrote {italic(str(path))}")

    ####################################################################################################################
    # rotation
    ####################################################################################################################

    def _registered_tenant(self, username: str) -> Tenant:
        entry: Optional[RegistryEntry] = self._registry.lookup(validate_username(username))
        if entry is None or entry.tenant is None:
            raise NotFound(f"tenant '{username}' is not registered")
        return entry.tenant

    def rotate_credentials(self, username: str, deadline: Deadline = None) -> Path:
        """Issues a fresh client certificate for a registered tenant and re-packages its kubeconfig."""
        deadline: Deadline = deadline if deadline else Deadline(self._provision_timeout)
        record: Callable[[ResourceRef], None] = self._recorder(username)
        with self._registry.lock(username):
            with failing_step('credential rotation', username):
                tenant: Tenant = self._registered_tenant(username)
                with Logger(f":key: Rotating client certificate of '{bold(username)}'", spacious=False):
                    credential: Credential = self._issue_credential(tenant, deadline, record)
                    tenant.cert_expiry = credential.expiry
                    self._registry.record(username, [], tenant=tenant)
                    return self._package(tenant, credential, deadline, record)

    def rotate_ingress(self, username: str, cert_secret: str = None, ingress_class: str = None,
                       deadline: Deadline = None) -> Path:
        """Re-configures the ingress route of a registered tenant, optionally switching its TLS secret."""
        deadline: Deadline = deadline if deadline else Deadline(self._provision_timeout)
        record: Callable[[ResourceRef], None] = self._recorder(username)
        with self._registry.lock(username):
            with failing_step('ingress rotation', username):
                tenant: Tenant = self._registered_tenant(username)
                if cert_secret:
                    tenant.cert_secret = cert_secret
                with Logger(f":globe_with_meridians: Re-configuring ingress of '{bold(username)}'", spacious=False):
                    path: Path = self._configure_ingress(tenant, ingress_class, deadline, record)
                    self._registry.record(username, [], tenant=tenant)
                    return path

    ####################################################################################################################
    # deprovisioning
    ####################################################################################################################

    def deprovision(self, username: str, deadline: Deadline = None) -> bool:
        """Deletes everything recorded for the given tenant, then the tenant's registry entry.

        An unknown tenant is not an error (a warning is printed and False is returned). Each object is dropped from
        the registry as soon as it is gone, so an interrupted teardown can simply be run again."""
        deadline: Deadline = deadline if deadline else Deadline(self._provision_timeout)
        with failing_step('input validation', username):
            validate_username(username)

        with self._registry.lock(username):
            entry: Optional[RegistryEntry] = self._registry.lookup(username)
            if entry is None:
                console().warn(str(NotFound(f"tenant '{username}' is not registered; nothing to delete")))
                return False

            for ref in entry.teardown_plan():
                with failing_step(f"deletion of {ref}", username):
                    self._delete(ref, deadline)
                self._registry.forget(username, ref)

            credentials_dir: Path = self.credentials_dir(username)
            if credentials_dir.is_dir() and not any(credentials_dir.iterdir()):
                credentials_dir.rmdir()
            self._registry.remove(username)
            return True

    def _delete(self, ref: ResourceRef, deadline: Deadline) -> None:
        if ref.is_file:
            path: Path = Path(ref.name)
            if path.exists():
                os.unlink(str(path))
                console().info(f":wastebasket: Deleted {italic(str(path))}")
            return

        deleted: bool = self._cluster.delete_object(ref.kind, ref.name, ref.namespace, deadline=deadline)
        console().info(f":wastebasket: Deleted {ref}" if deleted else f":heavy_check_mark: {ref} already gone")
        if ref.kind == 'Namespace':
            # leaves part of the budget for the objects deleted after the namespace
            waiting: Deadline = deadline.sub(min(self._termination_timeout, deadline.remaining / 2))
            try:
                self._poll(lambda: self._cluster.get_object('Namespace', ref.name, deadline=waiting),
                           lambda ns: ns is None,
                           waiting)
            except TimeoutError:
                console().warn(f"Namespace '{ref.name}' is still terminating; it will disappear shortly")

    ####################################################################################################################
    # inspection
    ####################################################################################################################

    def summary(self, result: ProvisionResult) -> None:
        tenant: Tenant = result.tenant
        with Logger(f":tada: Tenant '{bold(tenant.username)}' is ready", spacious=False) as logger:
            logger.info(f"User:        {bold(tenant.username)}")
            logger.info(f"Namespace:   {bold(tenant.namespace)}")
            logger.info(f"Role:        {bold(tenant.role.value)}")
            logger.info(f"Subdomain:   {underline(f'https://{tenant.subdomain}')}")
            logger.info(f"Kubeconfig:  {italic(str(result.kubeconfig_path))}")
            logger.info(f"Manifests:   {italic(str(result.manifest_path))}")
            if tenant.cert_expiry:
                logger.info(f"Expires:     {tenant.cert_expiry.isoformat()}")
            if not result.access_verified:
                logger.warn(f"Access could not be verified yet")
            logger.info('')
            logger.info(f"Usage:")
            logger.info(f"  export KUBECONFIG={result.kubeconfig_path}")
            logger.info(f"  kubectl get pods")
