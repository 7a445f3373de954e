from pathlib import Path

import pytest
import yaml
from cryptography import x509

from cluster import ClusterServices
from errors import NoIngressClass, ApprovalDenied, UnknownRole, ResourceConflict, NotFound, ClusterUnavailable, \
    InvalidInput, OperationTimeout
from ingress import IngressConfigurator
from issuer import CertificateIssuer
from kubectl_stub import write_kubectl, TERMINATING_NAMESPACE_KUBECTL
from manifests import DEVELOPER_RULES
from mock_cluster_services import MockClusterServices
from packager import CredentialPackager, RewriteRule
from provisioner import TenantProvisioner, ProvisionResult
from registry import LifecycleRegistry, RegistryEntry
from tenant import Tenant, Role, ResourceRef, TENANT_LABEL
from util import Deadline, DeadlineExceeded


def create_provisioner(cluster: ClusterServices, state_dir: Path) -> TenantProvisioner:
    return TenantProvisioner(cluster=cluster,
                             registry=LifecycleRegistry(state_dir),
                             issuer=CertificateIssuer(cluster, poll_interval=0.01, poll_max_interval=0.02),
                             configurator=IngressConfigurator(cluster),
                             packager=CredentialPackager([RewriteRule(r'0\.0\.0\.0', '127.0.0.1')]),
                             poll_interval=0.01,
                             poll_max_interval=0.02)


@pytest.fixture
def cluster() -> MockClusterServices:
    return MockClusterServices(secrets={'cert-manager': MockClusterServices.tls_secret(),
                                        'kube-system': MockClusterServices.tls_secret('other-cert')})


@pytest.fixture
def state_dir(tmp_path) -> Path:
    return tmp_path / 'state'


@pytest.fixture
def provisioner(cluster: MockClusterServices, state_dir: Path) -> TenantProvisioner:
    return create_provisioner(cluster, state_dir)


def create_count(cluster: MockClusterServices, kind: str) -> int:
    return len([call for call in cluster.calls if call[0] == 'create' and call[1] == kind])


def test_provision_alice(cluster: MockClusterServices, provisioner: TenantProvisioner, state_dir: Path):
    result: ProvisionResult = provisioner.provision(Tenant('alice', 'example.com', role=Role.DEVELOPER))

    namespace: dict = cluster.get_object('Namespace', 'alice')
    assert namespace['metadata']['labels'] == {TENANT_LABEL: 'alice'}

    role: dict = cluster.get_object('Role', 'developer', 'alice')
    assert role['rules'] == list(DEVELOPER_RULES)

    binding: dict = cluster.get_object('RoleBinding', 'alice-binding', 'alice')
    assert binding['roleRef'] == {'apiGroup': 'rbac.authorization.k8s.io', 'kind': 'Role', 'name': 'developer'}
    assert binding['subjects'] == [{'kind': 'User', 'name': 'alice', 'apiGroup': 'rbac.authorization.k8s.io'}]

    csr: dict = cluster.get_object('CertificateSigningRequest', 'alice')
    assert csr['spec']['expirationSeconds'] == 365 * 86400

    ingress: dict = cluster.get_object('Ingress', 'alice-ingress', 'alice')
    assert ingress['spec']['rules'][0]['host'] == 'alice.example.com'
    assert ingress['spec']['tls'][0]['secretName'] == 'wildcard-cert'
    assert cluster.get_object('Secret', 'wildcard-cert', 'alice') is not None
    assert cluster.get_object('Deployment', 'alice-nginx', 'alice') is not None

    # local files
    user_dir: Path = state_dir / 'alice'
    assert sorted(p.name for p in user_dir.iterdir()) == \
           ['alice-ingress.yaml', 'alice-kubeconfig.yaml', 'alice.crt', 'alice.csr', 'alice.key']
    assert (user_dir / 'alice.key').stat().st_mode & 0o777 == 0o600
    assert (user_dir / 'alice-kubeconfig.yaml').stat().st_mode & 0o777 == 0o600
    assert [m['kind'] for m in yaml.safe_load_all((user_dir / 'alice-ingress.yaml').read_text())] == \
           ['ConfigMap', 'Deployment', 'Service', 'Ingress']

    kubeconfig: dict = yaml.safe_load(result.kubeconfig_path.read_text())
    assert result.kubeconfig_path == user_dir / 'alice-kubeconfig.yaml'
    assert kubeconfig['current-context'] == 'alice@kind-test'
    assert kubeconfig['clusters'][0]['cluster']['server'] == 'https://127.0.0.1:6443'
    assert kubeconfig['contexts'][0]['context']['namespace'] == 'alice'
    assert result.access_verified

    # registry
    entry: RegistryEntry = provisioner.registry.lookup('alice')
    assert entry.tenant.subdomain == 'alice.example.com'
    assert entry.tenant.cert_expiry == x509.load_pem_x509_certificate(
        (user_dir / 'alice.crt').read_bytes()).not_valid_after_utc
    assert {ref.kind for ref in entry.resources} == {
        'Namespace', 'Role', 'RoleBinding', 'CertificateSigningRequest', 'Secret', 'ConfigMap', 'Deployment',
        'Service', 'Ingress', 'File'
    }
    assert len([ref for ref in entry.resources if ref.is_file]) == 5


def test_provision_is_idempotent(cluster: MockClusterServices, provisioner: TenantProvisioner):
    tenant: Tenant = Tenant('alice', 'example.com')
    provisioner.provision(tenant)
    snapshot = cluster.snapshot()
    resources = provisioner.registry.lookup('alice').resources
    kubeconfig: bytes = provisioner.kubeconfig_path('alice').read_bytes()
    created = provisioner.registry.lookup('alice').tenant.created

    provisioner.provision(Tenant('alice', 'example.com'))
    assert cluster.snapshot() == snapshot
    assert provisioner.registry.lookup('alice').resources == resources
    assert provisioner.registry.lookup('alice').tenant.created == created
    assert provisioner.registry.usernames() == ['alice']

    # the existing (still valid) certificate is reused
    assert create_count(cluster, 'CertificateSigningRequest') == 1
    assert provisioner.kubeconfig_path('alice').read_bytes() == kubeconfig


def test_deprovision_restores_cluster(cluster: MockClusterServices, provisioner: TenantProvisioner,
                                      state_dir: Path):
    before = cluster.snapshot()
    provisioner.provision(Tenant('alice', 'example.com', namespace='team-alice', role=Role.EDIT))
    assert cluster.snapshot() != before

    assert provisioner.deprovision('alice')
    assert cluster.snapshot() == before
    assert provisioner.registry.lookup('alice') is None
    assert not (state_dir / 'alice').exists()


def test_deprovision_order(cluster: MockClusterServices, provisioner: TenantProvisioner):
    provisioner.provision(Tenant('alice', 'example.com'))
    cluster.calls.clear()
    provisioner.deprovision('alice')
    deleted = [kind for verb, kind, _ in cluster.calls if verb == 'delete']
    assert deleted.index('Ingress') < deleted.index('RoleBinding') < deleted.index('Namespace') \
           < deleted.index('CertificateSigningRequest')


def test_deprovision_unknown_tenant(capsys, provisioner: TenantProvisioner):
    assert not provisioner.deprovision('nobody')
    assert "tenant 'nobody' is not registered" in capsys.readouterr().out


def test_deprovision_twice(provisioner: TenantProvisioner):
    provisioner.provision(Tenant('alice', 'example.com'))
    assert provisioner.deprovision('alice')
    assert not provisioner.deprovision('alice')


def test_deprovision_tolerates_objects_already_gone(cluster: MockClusterServices, provisioner: TenantProvisioner):
    before = cluster.snapshot()
    provisioner.provision(Tenant('alice', 'example.com'))
    cluster.delete_object('Namespace', 'alice')
    provisioner.kubeconfig_path('alice').unlink()

    assert provisioner.deprovision('alice')
    assert cluster.snapshot() == before


def test_deprovision_gives_up_waiting_for_terminating_namespace(capsys, tmp_path, state_dir: Path):
    cluster: ClusterServices = ClusterServices(kubectl=write_kubectl(tmp_path, TERMINATING_NAMESPACE_KUBECTL),
                                               retries=0)
    provisioner: TenantProvisioner = create_provisioner(cluster, state_dir)
    key: Path = provisioner.key_path('alice')
    key.parent.mkdir(parents=True)
    key.write_bytes(b'key')
    provisioner.registry.record('alice', [ResourceRef('Namespace', 'alice'), ResourceRef.file(str(key))])

    assert provisioner.deprovision('alice', deadline=Deadline(1.0))
    assert "Namespace 'alice' is still terminating" in capsys.readouterr().out
    assert not key.exists()
    assert provisioner.registry.lookup('alice') is None


def test_exhausted_deadline_names_step(state_dir: Path):
    cluster: MockClusterServices = MockClusterServices(
        secrets={'cert-manager': MockClusterServices.tls_secret()},
        failures={('create', 'Namespace'): DeadlineExceeded("deadline passed before 'kubectl create' could run")})
    with pytest.raises(OperationTimeout, match=r"namespace creation failed for tenant 'alice': deadline passed"):
        create_provisioner(cluster, state_dir).provision(Tenant('alice', 'example.com'))


def test_no_ingress_class_leaves_no_ingress(state_dir: Path):
    cluster: MockClusterServices = MockClusterServices(ingress_classes=[],
                                                       secrets={'cert-manager': MockClusterServices.tls_secret()})
    provisioner: TenantProvisioner = create_provisioner(cluster, state_dir)
    before = cluster.snapshot()

    with pytest.raises(NoIngressClass, match=r"ingress configuration failed for tenant 'alice'") as e:
        provisioner.provision(Tenant('alice', 'example.com'))
    assert e.value.exit_code == 6
    assert cluster.objects('Ingress') == []
    assert cluster.objects('Deployment') == []
    assert cluster.objects('Secret', 'alice') == []

    # whatever was created before the failure is recorded, and can be torn down
    kinds = {ref.kind for ref in provisioner.registry.lookup('alice').resources}
    assert {'Namespace', 'RoleBinding', 'CertificateSigningRequest'} <= kinds
    provisioner.deprovision('alice')
    assert cluster.snapshot() == before
    assert not (state_dir / 'alice').exists()


def test_denied_certificate_is_cleaned_up(state_dir: Path):
    cluster: MockClusterServices = MockClusterServices(deny_csrs=True,
                                                       secrets={'cert-manager': MockClusterServices.tls_secret()})
    provisioner: TenantProvisioner = create_provisioner(cluster, state_dir)
    before = cluster.snapshot()

    with pytest.raises(ApprovalDenied, match=r"certificate issuance failed for tenant 'alice'"):
        provisioner.provision(Tenant('alice', 'example.com'))
    assert ResourceRef('CertificateSigningRequest', 'alice') in provisioner.registry.lookup('alice').resources

    provisioner.deprovision('alice')
    assert cluster.snapshot() == before


def test_missing_cluster_role(cluster: MockClusterServices, provisioner: TenantProvisioner):
    cluster.delete_object('ClusterRole', 'view')
    with pytest.raises(UnknownRole, match=r"cluster role 'view' does not exist"):
        provisioner.provision(Tenant('alice', 'example.com', role=Role.VIEW))


@pytest.mark.parametrize("role", [Role.ADMIN, Role.EDIT, Role.VIEW])
def test_builtin_roles(cluster: MockClusterServices, provisioner: TenantProvisioner, role: Role):
    provisioner.provision(Tenant('alice', 'example.com', role=role))
    binding: dict = cluster.get_object('RoleBinding', 'alice-binding', 'alice')
    assert binding['roleRef'] == {'apiGroup': 'rbac.authorization.k8s.io', 'kind': 'ClusterRole', 'name': role.value}
    assert cluster.get_object('Role', 'developer', 'alice') is None


def test_role_change_recreates_binding_and_certificate(cluster: MockClusterServices,
                                                       provisioner: TenantProvisioner):
    provisioner.provision(Tenant('alice', 'example.com', role=Role.DEVELOPER))
    provisioner.provision(Tenant('alice', 'example.com', role=Role.ADMIN))

    binding: dict = cluster.get_object('RoleBinding', 'alice-binding', 'alice')
    assert binding['roleRef']['kind'] == 'ClusterRole'
    assert binding['roleRef']['name'] == 'admin'
    assert create_count(cluster, 'RoleBinding') == 2
    assert create_count(cluster, 'CertificateSigningRequest') == 2
    assert provisioner.registry.lookup('alice').tenant.role == Role.ADMIN


def test_developer_role_is_overwritten(cluster: MockClusterServices, provisioner: TenantProvisioner):
    provisioner.provision(Tenant('alice', 'example.com'))
    cluster.apply_object({'apiVersion': 'rbac.authorization.k8s.io/v1', 'kind': 'Role',
                          'metadata': {'name': 'developer', 'namespace': 'alice'},
                          'rules': [{'apiGroups': [''], 'resources': ['pods'], 'verbs': ['get']}]})

    provisioner.provision(Tenant('alice', 'example.com'))
    assert cluster.get_object('Role', 'developer', 'alice')['rules'] == list(DEVELOPER_RULES)


def test_namespace_owned_by_another_tenant(state_dir: Path):
    cluster: MockClusterServices = MockClusterServices(namespaces={'alice': {TENANT_LABEL: 'bob'}},
                                                       secrets={'cert-manager': MockClusterServices.tls_secret()})
    provisioner: TenantProvisioner = create_provisioner(cluster, state_dir)
    with pytest.raises(ResourceConflict, match=r"namespace creation failed for tenant 'alice'.*owned by tenant 'bob'"):
        provisioner.provision(Tenant('alice', 'example.com'))
    assert cluster.get_object('Namespace', 'alice') is not None


def test_unmanaged_namespace_is_adopted_and_kept(capsys, state_dir: Path):
    cluster: MockClusterServices = MockClusterServices(namespaces={'alice': {}},
                                                       secrets={'cert-manager': MockClusterServices.tls_secret()})
    provisioner: TenantProvisioner = create_provisioner(cluster, state_dir)
    before = cluster.snapshot()

    provisioner.provision(Tenant('alice', 'example.com'))
    assert 'adopting it' in capsys.readouterr().out
    assert ResourceRef('Namespace', 'alice') not in provisioner.registry.lookup('alice').resources

    provisioner.deprovision('alice')
    assert cluster.get_object('Namespace', 'alice') is not None
    assert cluster.snapshot() == before


def test_registry_conflicts(provisioner: TenantProvisioner):
    provisioner.provision(Tenant('bob', 'example.com', namespace='shared'))

    with pytest.raises(ResourceConflict, match=r"namespace 'shared' already belongs to tenant 'bob'"):
        provisioner.provision(Tenant('alice', 'example.com', namespace='shared'))
    with pytest.raises(ResourceConflict, match=r"already exists with namespace 'shared'"):
        provisioner.provision(Tenant('bob', 'example.com'))
    with pytest.raises(ResourceConflict, match=r"and domain 'example.com'"):
        provisioner.provision(Tenant('bob', 'example.org', namespace='shared'))
    assert provisioner.registry.lookup('alice') is None


def test_subdomain_routed_outside_registry(cluster: MockClusterServices, provisioner: TenantProvisioner):
    cluster.create_object({'apiVersion': 'v1', 'kind': 'Namespace', 'metadata': {'name': 'legacy'}})
    cluster.create_object({'apiVersion': 'networking.k8s.io/v1', 'kind': 'Ingress',
                           'metadata': {'name': 'old', 'namespace': 'legacy'},
                           'spec': {'rules': [{'host': 'alice.example.com'}]}})
    with pytest.raises(ResourceConflict, match=r"already routed by ingress 'legacy/old'"):
        provisioner.provision(Tenant('alice', 'example.com'))


def test_rotate_credentials(cluster: MockClusterServices, provisioner: TenantProvisioner):
    provisioner.provision(Tenant('alice', 'example.com'))
    certificate: bytes = provisioner.certificate_path('alice').read_bytes()
    kubeconfig: bytes = provisioner.kubeconfig_path('alice').read_bytes()

    assert provisioner.rotate_credentials('alice') == provisioner.kubeconfig_path('alice')
    assert provisioner.certificate_path('alice').read_bytes() != certificate
    assert provisioner.kubeconfig_path('alice').read_bytes() != kubeconfig
    assert create_count(cluster, 'CertificateSigningRequest') == 2
    assert cluster.get_object('Namespace', 'alice') is not None


def test_rotate_ingress(cluster: MockClusterServices, provisioner: TenantProvisioner):
    provisioner.provision(Tenant('alice', 'example.com'))
    provisioner.rotate_ingress('alice', cert_secret='other-cert')

    ingress: dict = cluster.get_object('Ingress', 'alice-ingress', 'alice')
    assert ingress['spec']['tls'][0]['secretName'] == 'other-cert'
    assert cluster.get_object('Secret', 'other-cert', 'alice') is not None
    entry: RegistryEntry = provisioner.registry.lookup('alice')
    assert entry.tenant.cert_secret == 'other-cert'
    assert ResourceRef('Secret', 'other-cert', 'alice') in entry.resources


def test_rotate_unknown_tenant(provisioner: TenantProvisioner):
    with pytest.raises(NotFound, match=r"tenant 'nobody' is not registered"):
        provisioner.rotate_credentials('nobody')
    with pytest.raises(NotFound):
        provisioner.rotate_ingress('nobody')


def test_rotate_ingress_rejects_illegal_secret_name(provisioner: TenantProvisioner):
    provisioner.provision(Tenant('alice', 'example.com'))
    with pytest.raises(InvalidInput,
                       match=r"ingress rotation failed for tenant 'alice': illegal certificate secret name 'Bad_Name'"):
        provisioner.rotate_ingress('alice', cert_secret='Bad_Name')
    assert provisioner.registry.lookup('alice').tenant.cert_secret == 'wildcard-cert'


def test_interrupted_deprovision_can_be_resumed(cluster: MockClusterServices, provisioner: TenantProvisioner):
    before = cluster.snapshot()
    provisioner.provision(Tenant('alice', 'example.com'))

    cluster.failures[('delete', 'Namespace')] = ClusterUnavailable('cluster API is unreachable')
    with pytest.raises(ClusterUnavailable, match=r"deletion of namespace 'alice' failed for tenant 'alice'"):
        provisioner.deprovision('alice')

    # objects deleted so far are no longer listed; the rest are
    remaining = provisioner.registry.lookup('alice').resources
    assert ResourceRef('Ingress', 'alice-ingress', 'alice') not in remaining
    assert ResourceRef('Namespace', 'alice') in remaining

    del cluster.failures[('delete', 'Namespace')]
    assert provisioner.deprovision('alice')
    assert cluster.snapshot() == before


def test_summary(capsys, provisioner: TenantProvisioner):
    result: ProvisionResult = provisioner.provision(Tenant('alice', 'example.com'))
    capsys.readouterr()
    provisioner.summary(result)
    out: str = capsys.readouterr().out
    assert 'https://alice.example.com' in out
    assert str(result.kubeconfig_path) in out
    assert 'developer' in out
