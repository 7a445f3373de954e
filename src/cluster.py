import base64
import json
import subprocess
from time import sleep
from typing import Union, Sequence, MutableSequence, Optional, Callable

from colors import faint

from errors import ClusterError, ClusterUnavailable, ResourceConflict, ApprovalDenied
from util import console, Deadline, DeadlineExceeded

# substrings of kubectl's stderr that signal the API server could not be reached (as opposed to a request that
# reached the server and was rejected)
UNAVAILABLE_MARKERS: Sequence[str] = (
    'Unable to connect to the server',
    'connection refused',
    'i/o timeout',
    'TLS handshake timeout',
    'no such host',
    'the server is currently unable to handle the request',
    'ServiceUnavailable',
    'context deadline exceeded',
    'connection reset by peer',
)


class ClusterInfo:
    """Connection details of the cluster the operator's kubectl is currently pointed at."""

    def __init__(self, name: str, server: str, ca_data: bytes) -> None:
        super().__init__()
        self._name: str = name
        self._server: str = server
        self._ca_data: bytes = ca_data

    @property
    def name(self) -> str:
        return self._name

    @property
    def server(self) -> str:
        return self._server

    @property
    def ca_data(self) -> bytes:
        """The cluster CA certificate (PEM, not base64-encoded)."""
        return self._ca_data


class ClusterServices:
    """Thin gateway to the Kubernetes API, implemented on top of the 'kubectl' binary.

    Every call is bounded by a timeout; calls that fail because the API server is unreachable are retried with an
    exponential backoff, and surface as 'ClusterUnavailable' once the retries are exhausted. Tests substitute this
    class with an in-memory implementation."""

    def __init__(self,
                 kubectl: str = 'kubectl',
                 kubeconfig: str = None,
                 timeout: float = 30,
                 retries: int = 3,
                 retry_interval: float = 1.0,
                 verbose: bool = False,
                 sleeper: Callable[[float], None] = sleep) -> None:
        super().__init__()
        self._kubectl: str = kubectl
        self._kubeconfig: str = kubeconfig
        self._timeout: float = timeout
        self._retries: int = retries
        self._retry_interval: float = retry_interval
        self._verbose: bool = verbose
        self._sleeper: Callable[[float], None] = sleeper

    def _command(self, args: Sequence[str], kubeconfig: str = None) -> MutableSequence[str]:
        cmd: MutableSequence[str] = [self._kubectl]
        kubeconfig = kubeconfig if kubeconfig else self._kubeconfig
        if kubeconfig:
            cmd.extend(['--kubeconfig', kubeconfig])
        cmd.extend(args)
        return cmd

    def _run(self,
             args: Sequence[str],
             input: str = None,
             deadline: Deadline = None,
             kubeconfig: str = None) -> subprocess.CompletedProcess:
        cmd: MutableSequence[str] = self._command(args, kubeconfig=kubeconfig)
        if self._verbose:
            console().info(faint(f"$ {' '.join(cmd)}"))

        interval: float = self._retry_interval
        attempt: int = 0
        while True:
            attempt += 1
            if deadline is not None and deadline.expired:
                raise DeadlineExceeded(f"deadline passed before 'kubectl {args[0]}' could run")
            timeout: float = deadline.clamp(self._timeout) if deadline else self._timeout
            try:
                process = subprocess.run(cmd,
                                         input=input,
                                         encoding='utf-8',
                                         stdout=subprocess.PIPE,
                                         stderr=subprocess.PIPE,
                                         timeout=max(timeout, 0.001),
                                         check=False)
                if process.returncode == 0 or not self._is_unavailable(process.stderr):
                    return process
                reason: str = process.stderr.strip()
            except subprocess.TimeoutExpired as e:
                reason: str = f"'kubectl {args[0]}' timed out after {timeout:.1f} seconds"
                # cut short by the deadline rather than by an unresponsive server
                if deadline is not None and timeout < self._timeout:
                    raise DeadlineExceeded(reason) from e
            except FileNotFoundError as e:
                raise ClusterUnavailable(f"kubectl binary '{self._kubectl}' could not be found") from e

            if attempt > self._retries or (deadline is not None and deadline.expired):
                raise ClusterUnavailable(f"cluster API is unreachable (gave up after {attempt} attempts): "
                                         f"{self._first_line(reason)}")
            console().warn(f":hourglass: Cluster API unreachable, retrying in {interval:.1f}s "
                           f"(attempt {attempt}/{self._retries})...")
            self._sleeper(deadline.clamp(interval) if deadline else interval)
            interval = interval * 2

    @staticmethod
    def _is_unavailable(stderr: str) -> bool:
        return any(marker in stderr for marker in UNAVAILABLE_MARKERS) if stderr else False

    @staticmethod
    def _first_line(text: str) -> str:
        text = text.strip() if text else ''
        return text.split('\n')[0] if text else 'no details available'

    def _check(self, process: subprocess.CompletedProcess, what: str) -> subprocess.CompletedProcess:
        if process.returncode == 0:
            return process
        stderr: str = process.stderr if process.stderr else ''
        if 'AlreadyExists' in stderr or 'already exists' in stderr:
            raise ResourceConflict(f"{what}: already exists")
        raise ClusterError(f"{what}: {self._first_line(stderr)}")

    @staticmethod
    def _namespace_args(namespace: Optional[str]) -> Sequence[str]:
        return ['--namespace', namespace] if namespace else []

    def get_object(self, kind: str, name: str, namespace: str = None, deadline: Deadline = None) -> Union[None, dict]:
        args = ['get', kind, name, *self._namespace_args(namespace), '--ignore-not-found=true', '--output=json']
        process = self._check(self._run(args, deadline=deadline), f"could not get {kind.lower()} '{name}'")
        return json.loads(process.stdout) if process.stdout.strip() else None

    def list_objects(self, kind: str, namespace: str = None, deadline: Deadline = None) -> Sequence[dict]:
        scope: Sequence[str] = self._namespace_args(namespace) if namespace else ['--all-namespaces']
        process = self._check(self._run(['get', kind, *scope, '--output=json'], deadline=deadline),
                              f"could not list {kind.lower()} objects")
        result: dict = json.loads(process.stdout) if process.stdout.strip() else {}
        return result['items'] if 'items' in result else []

    def create_object(self, manifest: dict, deadline: Deadline = None) -> None:
        what: str = self._describe(manifest)
        self._check(self._run(['create', '--save-config=true', '-f', '-'], input=json.dumps(manifest),
                              deadline=deadline),
                    f"could not create {what}")

    def apply_object(self, manifest: dict, deadline: Deadline = None) -> None:
        what: str = self._describe(manifest)
        self._check(self._run(['apply', '-f', '-'], input=json.dumps(manifest), deadline=deadline),
                    f"could not apply {what}")

    def delete_object(self, kind: str, name: str, namespace: str = None, deadline: Deadline = None) -> bool:
        """Deletes the given object, treating a missing object as success. Returns whether anything was deleted."""
        args = ['delete', kind, name, *self._namespace_args(namespace), '--ignore-not-found=true', '--wait=false']
        process = self._run(args, deadline=deadline)
        if process.returncode != 0 and namespace and 'NotFound' in (process.stderr or ''):
            # the enclosing namespace itself is gone
            return False
        self._check(process, f"could not delete {kind.lower()} '{name}'")
        return bool(process.stdout.strip())

    def approve_csr(self, name: str, deadline: Deadline = None) -> None:
        process = self._run(['certificate', 'approve', name], deadline=deadline)
        if process.returncode != 0:
            stderr: str = process.stderr if process.stderr else ''
            if 'Denied' in stderr or 'mutually exclusive' in stderr or 'Forbidden' in stderr or 'forbidden' in stderr:
                raise ApprovalDenied(f"certificate signing request '{name}' was not approved: "
                                     f"{self._first_line(stderr)}")
            self._check(process, f"could not approve certificate signing request '{name}'")

    def cluster_info(self, deadline: Deadline = None) -> ClusterInfo:
        process = self._check(self._run(['config', 'view', '--raw', '--minify', '--output=json'], deadline=deadline),
                              f"could not read cluster configuration")
        config: dict = json.loads(process.stdout) if process.stdout.strip() else {}
        clusters: Sequence[dict] = config['clusters'] if 'clusters' in config and config['clusters'] else []
        if not clusters:
            raise ClusterError(f"could not read cluster configuration: no cluster configured for kubectl")

        name: str = clusters[0]['name'] if 'name' in clusters[0] else None
        cluster: dict = clusters[0]['cluster'] if 'cluster' in clusters[0] else {}
        server: str = cluster['server'] if 'server' in cluster else None
        if not name or not server:
            raise ClusterError(f"could not read cluster configuration: cluster name or server missing")

        if 'certificate-authority-data' in cluster:
            ca_data: bytes = base64.b64decode(cluster['certificate-authority-data'])
        elif 'certificate-authority' in cluster:
            try:
                with open(cluster['certificate-authority'], 'rb') as f:
                    ca_data: bytes = f.read()
            except OSError as e:
                raise ClusterError(f"could not read cluster configuration: certificate authority file "
                                   f"'{cluster['certificate-authority']}' of cluster '{name}' is unreadable "
                                   f"({e.strerror})") from e
        else:
            raise ClusterError(f"could not read cluster configuration: cluster '{name}' has no certificate authority")
        return ClusterInfo(name=name, server=server, ca_data=ca_data)

    def can_i(self, kubeconfig: str, verb: str, resource: str, namespace: str, deadline: Deadline = None) -> bool:
        process = self._run(['auth', 'can-i', verb, resource, '--namespace', namespace],
                            kubeconfig=kubeconfig,
                            deadline=deadline)
        return process.returncode == 0 and process.stdout.strip() == 'yes'

    @staticmethod
    def _describe(manifest: dict) -> str:
        kind: str = manifest['kind'].lower() if 'kind' in manifest else 'object'
        metadata: dict = manifest['metadata'] if 'metadata' in manifest else {}
        name: str = metadata['name'] if 'name' in metadata else '?'
        return f"{kind} '{metadata['namespace']}/{name}'" if 'namespace' in metadata else f"{kind} '{name}'"
