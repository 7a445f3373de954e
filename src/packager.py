import base64
import re
from typing import Sequence, Mapping, Any, Pattern

import yaml

from errors import InvalidInput
from tenant import Tenant, Credential


class RewriteRule:
    """Regular-expression substitution applied to the cluster endpoint before it is handed out to tenants.

    Useful when the API server advertises an address (e.g. '0.0.0.0') that isn't reachable from client machines."""

    def __init__(self, pattern: str, replacement: str) -> None:
        super().__init__()
        try:
            self._pattern: Pattern = re.compile(pattern)
        except re.error as e:
            raise InvalidInput(f"illegal endpoint rewrite pattern '{pattern}': {e}") from e
        self._replacement: str = replacement

    @property
    def pattern(self) -> str:
        return self._pattern.pattern

    @property
    def replacement(self) -> str:
        return self._replacement

    def apply(self, endpoint: str) -> str:
        return self._pattern.sub(self._replacement, endpoint)

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> 'RewriteRule':
        return RewriteRule(pattern=data['pattern'], replacement=data['replacement'])


def rewrite_endpoint(endpoint: str, rules: Sequence[RewriteRule]) -> str:
    for rule in rules:
        endpoint = rule.apply(endpoint)
    return endpoint


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode('ascii')


class CredentialPackager:
    """Assembles tenant kubeconfig files.

    Packaging is a pure function of its inputs: the same tenant, credential, endpoint and CA always produce the same
    bytes, which makes the output safe to compare and to regenerate."""

    def __init__(self, rewrite_rules: Sequence[RewriteRule] = None) -> None:
        super().__init__()
        self._rewrite_rules: Sequence[RewriteRule] = list(rewrite_rules) if rewrite_rules else []

    @property
    def rewrite_rules(self) -> Sequence[RewriteRule]:
        return self._rewrite_rules

    @staticmethod
    def context_name(tenant: Tenant, cluster_name: str) -> str:
        return f"{tenant.username}@{cluster_name}"

    def build(self, tenant: Tenant, credential: Credential, cluster_name: str, cluster_endpoint: str,
              cluster_ca: bytes) -> dict:
        context_name: str = self.context_name(tenant, cluster_name)
        return {
            'apiVersion': 'v1',
            'kind': 'Config',
            'clusters': [{
                'cluster': {
                    'certificate-authority-data': _b64(cluster_ca),
                    'server': rewrite_endpoint(cluster_endpoint, self._rewrite_rules),
                },
                'name': cluster_name,
            }],
            'contexts': [{
                'context': {
                    'cluster': cluster_name,
                    'namespace': tenant.namespace,
                    'user': tenant.username,
                },
                'name': context_name,
            }],
            'current-context': context_name,
            'users': [{
                'name': tenant.username,
                'user': {
                    'client-certificate-data': _b64(credential.certificate),
                    'client-key-data': _b64(credential.private_key),
                },
            }],
        }

    def package(self, tenant: Tenant, credential: Credential, cluster_name: str, cluster_endpoint: str,
                cluster_ca: bytes) -> bytes:
        kubeconfig: dict = self.build(tenant, credential, cluster_name, cluster_endpoint, cluster_ca)
        return yaml.safe_dump(kubeconfig, default_flow_style=False, sort_keys=False, width=float('inf')) \
            .encode('utf-8')
