import re
from datetime import datetime, timezone
from enum import Enum, unique
from typing import Optional, Mapping, Any

from errors import InvalidInput, UnknownRole

DNS_LABEL_PATTERN = re.compile(r'^[a-z0-9]([-a-z0-9]{0,61}[a-z0-9])?$')
DOMAIN_PATTERN = re.compile(r'^(?=.{1,253}$)([a-z0-9]([-a-z0-9]{0,61}[a-z0-9])?\.)*[a-z0-9]([-a-z0-9]{0,61}[a-z0-9])?$')

TENANT_LABEL = 'onboard.k8s.io/tenant'


@unique
class Role(Enum):
    ADMIN = 'admin'
    EDIT = 'edit'
    VIEW = 'view'
    DEVELOPER = 'developer'

    @staticmethod
    def parse(value: str) -> 'Role':
        for role in Role:
            if role.value == value:
                return role
        raise UnknownRole(f"unknown role '{value}' (expected one of: {', '.join(r.value for r in Role)})")

    @property
    def builtin(self) -> bool:
        """Whether this role maps onto one of Kubernetes' built-in cluster roles."""
        return self is not Role.DEVELOPER

    @property
    def role_kind(self) -> str:
        return 'ClusterRole' if self.builtin else 'Role'


def validate_username(username: str) -> str:
    if not username:
        raise InvalidInput(f"username is required")
    if not DNS_LABEL_PATTERN.match(username):
        raise InvalidInput(f"illegal username '{username}': must be a lower-case DNS label "
                           f"(letters, digits and '-', at most 63 characters)")
    return username


def validate_domain(domain: str) -> str:
    if not domain:
        raise InvalidInput(f"domain is required")
    if not DOMAIN_PATTERN.match(domain) or '.' not in domain:
        raise InvalidInput(f"illegal domain '{domain}': must be a lower-case DNS name such as 'example.com'")
    return domain


def validate_secret_name(name: str) -> str:
    if not name or not DOMAIN_PATTERN.match(name):
        raise InvalidInput(f"illegal certificate secret name '{name}'")
    return name


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _format_time(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class Tenant:
    """A provisioned user/namespace pair, along with everything needed to (re)provision it."""

    def __init__(self,
                 username: str,
                 domain: str,
                 namespace: str = None,
                 role: Role = Role.DEVELOPER,
                 cert_secret: str = 'wildcard-cert',
                 validity_days: int = 365,
                 created: datetime = None,
                 cert_expiry: datetime = None) -> None:
        super().__init__()
        self._username: str = validate_username(username)
        self._domain: str = validate_domain(domain)
        self._namespace: str = namespace if namespace else username
        if not DNS_LABEL_PATTERN.match(self._namespace):
            raise InvalidInput(f"illegal namespace '{self._namespace}': must be a lower-case DNS label")
        if not isinstance(role, Role):
            raise UnknownRole(f"unknown role '{role}'")
        self._role: Role = role
        self._cert_secret: str = validate_secret_name(cert_secret)
        if validity_days is None or int(validity_days) < 1:
            raise InvalidInput(f"certificate validity must be at least one day (got {validity_days})")
        self._validity_days: int = int(validity_days)
        self._created: datetime = created if created else datetime.now(timezone.utc)
        self._cert_expiry: datetime = cert_expiry

    @property
    def username(self) -> str:
        return self._username

    @property
    def domain(self) -> str:
        return self._domain

    @property
    def namespace(self) -> str:
        return self._namespace

    @property
    def role(self) -> Role:
        return self._role

    @property
    def cert_secret(self) -> str:
        return self._cert_secret

    @cert_secret.setter
    def cert_secret(self, value: str) -> None:
        self._cert_secret = validate_secret_name(value)

    @property
    def validity_days(self) -> int:
        return self._validity_days

    @property
    def subdomain(self) -> str:
        return f"{self._username}.{self._domain}"

    @property
    def binding_name(self) -> str:
        return f"{self._username}-binding"

    @property
    def created(self) -> datetime:
        return self._created

    @property
    def cert_expiry(self) -> Optional[datetime]:
        return self._cert_expiry

    @cert_expiry.setter
    def cert_expiry(self, value: datetime) -> None:
        self._cert_expiry = value

    def same_identity(self, other: 'Tenant') -> bool:
        """Whether 'other' describes the same tenant slice (ignoring timestamps and credentials)."""
        return self.username == other.username \
               and self.domain == other.domain \
               and self.namespace == other.namespace \
               and self.role == other.role

    def to_dict(self) -> dict:
        return {
            'username': self.username,
            'domain': self.domain,
            'namespace': self.namespace,
            'role': self.role.value,
            'cert_secret': self.cert_secret,
            'validity_days': self.validity_days,
            'subdomain': self.subdomain,
            'created': _format_time(self.created),
            'cert_expiry': _format_time(self.cert_expiry),
        }

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> 'Tenant':
        return Tenant(username=data['username'],
                      domain=data['domain'],
                      namespace=data.get('namespace'),
                      role=Role.parse(data['role']),
                      cert_secret=data.get('cert_secret', 'wildcard-cert'),
                      validity_days=data.get('validity_days', 365),
                      created=_parse_time(data.get('created')),
                      cert_expiry=_parse_time(data.get('cert_expiry')))


class Credential:
    """A tenant's private key, CSR and signed client certificate (all PEM-encoded)."""

    def __init__(self, private_key: bytes, csr: bytes, certificate: bytes, expiry: datetime) -> None:
        super().__init__()
        self._private_key: bytes = private_key
        self._csr: bytes = csr
        self._certificate: bytes = certificate
        self._expiry: datetime = expiry

    @property
    def private_key(self) -> bytes:
        return self._private_key

    @property
    def csr(self) -> bytes:
        return self._csr

    @property
    def certificate(self) -> bytes:
        return self._certificate

    @property
    def expiry(self) -> datetime:
        return self._expiry


class ResourceRef:
    """Reference to a single object created on behalf of a tenant: either a cluster object or a local file."""

    # teardown order: workloads & ingress, then RBAC inside the namespace, then the namespace itself, then
    # cluster-scoped objects, and finally local files
    TEARDOWN_ORDER: Mapping[str, int] = {
        'Ingress': 0,
        'Service': 0,
        'Deployment': 0,
        'ConfigMap': 0,
        'Secret': 0,
        'RoleBinding': 1,
        'Role': 1,
        'Namespace': 2,
        'ClusterRoleBinding': 3,
        'ClusterRole': 3,
        'CertificateSigningRequest': 3,
        'File': 4,
    }

    def __init__(self, kind: str, name: str, namespace: str = None, api_version: str = None) -> None:
        super().__init__()
        self._kind: str = kind
        self._name: str = name
        self._namespace: str = namespace
        self._api_version: str = api_version

    @staticmethod
    def file(path: str) -> 'ResourceRef':
        return ResourceRef(kind='File', name=str(path))

    @staticmethod
    def of(manifest: Mapping[str, Any]) -> 'ResourceRef':
        metadata: Mapping[str, Any] = manifest['metadata']
        return ResourceRef(kind=manifest['kind'],
                           name=metadata['name'],
                           namespace=metadata.get('namespace'),
                           api_version=manifest.get('apiVersion'))

    @property
    def kind(self) -> str:
        return self._kind

    @property
    def name(self) -> str:
        return self._name

    @property
    def namespace(self) -> Optional[str]:
        return self._namespace

    @property
    def api_version(self) -> Optional[str]:
        return self._api_version

    @property
    def is_file(self) -> bool:
        return self._kind == 'File'

    @property
    def teardown_rank(self) -> int:
        return ResourceRef.TEARDOWN_ORDER.get(self._kind, 0 if self._namespace else 3)

    def to_dict(self) -> dict:
        data: dict = {'kind': self.kind, 'name': self.name}
        if self.namespace: data['namespace'] = self.namespace
        if self.api_version: data['apiVersion'] = self.api_version
        return data

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> 'ResourceRef':
        return ResourceRef(kind=data['kind'],
                           name=data['name'],
                           namespace=data.get('namespace'),
                           api_version=data.get('apiVersion'))

    def __eq__(self, other) -> bool:
        if not isinstance(other, ResourceRef):
            return False
        return (self.kind, self.name, self.namespace) == (other.kind, other.name, other.namespace)

    def __hash__(self) -> int:
        return hash((self.kind, self.name, self.namespace))

    def __repr__(self) -> str:
        if self.is_file:
            return f"file '{self.name}'"
        elif self.namespace:
            return f"{self.kind.lower()} '{self.namespace}/{self.name}'"
        else:
            return f"{self.kind.lower()} '{self.name}'"


class ManifestSet:
    """An ordered collection of Kubernetes manifests that are applied (and serialized) together."""

    def __init__(self, manifests=None) -> None:
        super().__init__()
        self._manifests: list = list(manifests) if manifests else []

    @property
    def manifests(self) -> list:
        return self._manifests

    def add(self, manifest: dict) -> dict:
        self._manifests.append(manifest)
        return manifest

    def find(self, kind: str) -> Optional[dict]:
        for manifest in self._manifests:
            if manifest['kind'] == kind:
                return manifest
        return None

    def __iter__(self):
        return iter(self._manifests)

    def __len__(self) -> int:
        return len(self._manifests)
