import base64
from datetime import datetime, timezone
from typing import Callable, Optional

from colors import bold
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from cluster import ClusterServices
from errors import ApprovalDenied, IssuanceTimeout, ClusterError
from tenant import Credential, Role, ResourceRef
from util import console, Logger, Deadline, poll

CLIENT_SIGNER = 'kubernetes.io/kube-apiserver-client'
CSR_API_VERSION = 'certificates.k8s.io/v1'


def generate_private_key(key_size: int = 2048) -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=key_size)


def build_csr(private_key: rsa.RSAPrivateKey, username: str, role: Role) -> x509.CertificateSigningRequest:
    # the API server maps CN to the user name and O to its groups
    return x509.CertificateSigningRequestBuilder() \
        .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, username),
                                 x509.NameAttribute(NameOID.ORGANIZATION_NAME, role.value)])) \
        .sign(private_key, hashes.SHA256())


def csr_condition(csr: Optional[dict], condition: str) -> Optional[dict]:
    if not csr or 'status' not in csr or not csr['status']:
        return None
    for cond in csr['status'].get('conditions') or []:
        if cond.get('type') == condition and str(cond.get('status', 'True')) == 'True':
            return cond
    return None


class CertificateIssuer:
    """Obtains cluster-signed client certificates for tenants through the CertificateSigningRequest API."""

    def __init__(self,
                 cluster: ClusterServices,
                 signer_name: str = CLIENT_SIGNER,
                 key_size: int = 2048,
                 poll_interval: float = 0.5,
                 poll_max_interval: float = 5.0) -> None:
        super().__init__()
        self._cluster: ClusterServices = cluster
        self._signer_name: str = signer_name
        self._key_size: int = key_size
        self._poll_interval: float = poll_interval
        self._poll_max_interval: float = poll_max_interval

    def csr_name(self, username: str) -> str:
        return username

    def build_csr_manifest(self, username: str, csr_pem: bytes, validity_days: int) -> dict:
        return {
            'apiVersion': CSR_API_VERSION,
            'kind': 'CertificateSigningRequest',
            'metadata': {'name': self.csr_name(username)},
            'spec': {
                'request': base64.b64encode(csr_pem).decode('ascii'),
                'signerName': self._signer_name,
                'expirationSeconds': validity_days * 24 * 3600,
                'usages': ['client auth'],
            }
        }

    def issue(self,
              username: str,
              role: Role,
              validity_days: int,
              deadline: Deadline,
              on_submitted: Callable[[ResourceRef], None] = None) -> Credential:
        """Generates a keypair, has the cluster sign it, and returns the resulting credential.

        'on_submitted' is invoked as soon as the CSR object exists in the cluster, so the caller can record it for
        cleanup even if approval or issuance subsequently fails."""
        name: str = self.csr_name(username)
        logger: Logger = console()

        logger.info(f":key: Generating private key & certificate signing request...")
        private_key = generate_private_key(self._key_size)
        csr_pem: bytes = build_csr(private_key, username, role).public_bytes(serialization.Encoding.PEM)
        key_pem: bytes = private_key.private_bytes(encoding=serialization.Encoding.PEM,
                                                   format=serialization.PrivateFormat.TraditionalOpenSSL,
                                                   encryption_algorithm=serialization.NoEncryption())

        # signing requests are immutable, so a leftover request (from a previous issuance) must go first
        if self._cluster.get_object('CertificateSigningRequest', name, deadline=deadline) is not None:
            logger.info(f":recycle: Replacing previous certificate signing request '{bold(name)}'...")
            self._cluster.delete_object('CertificateSigningRequest', name, deadline=deadline)

        logger.info(f":outbox_tray: Submitting certificate signing request '{bold(name)}'...")
        manifest: dict = self.build_csr_manifest(username, csr_pem, validity_days)
        self._cluster.create_object(manifest, deadline=deadline)
        if on_submitted:
            on_submitted(ResourceRef.of(manifest))

        logger.info(f":white_check_mark: Approving certificate signing request...")
        self._cluster.approve_csr(name, deadline=deadline)

        logger.info(f":hourglass: Waiting for certificate to be issued...")
        certificate_pem: bytes = self._await_certificate(name, deadline)
        expiry: datetime = certificate_expiry(certificate_pem)
        logger.info(f":scroll: Certificate issued (expires {bold(expiry.isoformat())})")
        return Credential(private_key=key_pem, csr=csr_pem, certificate=certificate_pem, expiry=expiry)

    def _await_certificate(self, name: str, deadline: Deadline) -> bytes:

        def fetch() -> dict:
            csr: dict = self._cluster.get_object('CertificateSigningRequest', name, deadline=deadline)
            if csr is None:
                raise ClusterError(f"certificate signing request '{name}' disappeared before it was issued")
            denied = csr_condition(csr, 'Denied')
            if denied:
                raise ApprovalDenied(f"certificate signing request '{name}' was denied: "
                                     f"{denied.get('message', denied.get('reason', 'no reason given'))}")
            failed = csr_condition(csr, 'Failed')
            if failed:
                raise ApprovalDenied(f"signer failed to issue certificate for '{name}': "
                                     f"{failed.get('message', failed.get('reason', 'no reason given'))}")
            return csr

        def issued(csr: dict) -> bool:
            return 'status' in csr and bool(csr['status']) and bool(csr['status'].get('certificate'))

        try:
            csr: dict = poll(fetch, issued, deadline,
                             interval=self._poll_interval,
                             max_interval=self._poll_max_interval)
        except TimeoutError as e:
            raise IssuanceTimeout(f"certificate for '{name}' was not issued before the deadline") from e
        return base64.b64decode(csr['status']['certificate'])


def certificate_expiry(certificate_pem: bytes) -> datetime:
    certificate: x509.Certificate = x509.load_pem_x509_certificate(certificate_pem)
    return certificate.not_valid_after_utc.astimezone(timezone.utc)


def certificate_subject(certificate_pem: bytes) -> x509.Name:
    return x509.load_pem_x509_certificate(certificate_pem).subject
