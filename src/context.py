import os
import re
from importlib import metadata
from pathlib import Path
from typing import Any, Sequence, Mapping, Optional

import jsonschema
import yaml
from jsonschema import ValidationError

import util
from errors import InvalidInput
from packager import RewriteRule
from util import UserError, merge_into, bold, underline, Logger, italic

AUTO_FILE_PATTERN = r'^vars\.(.*\.)?auto\.yaml$'


class Settings:
    """Typed, validated view of the configuration variables the onboarding tool understands."""

    defaults: Mapping[str, Any] = {
        'validity_days': 365,
        'cert_secret': 'wildcard-cert',
        'secret_source_namespaces': ['cert-manager', 'kube-system'],
        'endpoint_rewrites': [{'pattern': r'0\.0\.0\.0', 'replacement': '127.0.0.1'}],
        'ingress_class': None,
        'workload_image': 'nginx:stable-alpine',
        'signer_name': 'kubernetes.io/kube-apiserver-client',
        'kubectl': 'kubectl',
        'kubeconfig': None,
        'command_timeout': 30,
        'cluster_retries': 3,
        'retry_interval': 1.0,
        'issuance_timeout': 120,
        'provision_timeout': 300,
    }

    schema: dict = {
        "type": "object",
        "required": ["state_dir"],
        "properties": {
            "state_dir": {"type": "string", "minLength": 1},
            "validity_days": {"type": "integer", "minimum": 1},
            "cert_secret": {"type": "string", "minLength": 1},
            "secret_source_namespaces": {"type": "array", "items": {"type": "string", "minLength": 1}},
            "endpoint_rewrites": {
                "type": "array",
                "items": {
                    "type": "object",
                    "required": ["pattern", "replacement"],
                    "additionalProperties": False,
                    "properties": {
                        "pattern": {"type": "string", "minLength": 1},
                        "replacement": {"type": "string"}
                    }
                }
            },
            "ingress_class": {"type": ["string", "null"]},
            "workload_image": {"type": "string", "minLength": 1},
            "signer_name": {"type": "string", "minLength": 1},
            "kubectl": {"type": "string", "minLength": 1},
            "kubeconfig": {"type": ["string", "null"]},
            "command_timeout": {"type": "number", "exclusiveMinimum": 0},
            "cluster_retries": {"type": "integer", "minimum": 0},
            "retry_interval": {"type": "number", "minimum": 0},
            "issuance_timeout": {"type": "number", "exclusiveMinimum": 0},
            "provision_timeout": {"type": "number", "exclusiveMinimum": 0}
        }
    }

    def __init__(self, data: Mapping[str, Any]) -> None:
        super().__init__()
        values: dict = {}
        for key in list(Settings.defaults.keys()) + ['state_dir']:
            value: Any = data[key] if key in data and data[key] is not None else Settings.defaults.get(key)
            values[key] = Settings._coerce(key, value)
        try:
            jsonschema.validate(values, Settings.schema)
        except ValidationError as e:
            path: str = '.'.join(str(p) for p in e.absolute_path)
            raise InvalidInput(f"illegal configuration{f' for {path!r}' if path else ''}: {e.message}") from e
        self._values: dict = values
        self._rewrite_rules: Sequence[RewriteRule] = [RewriteRule.from_dict(r) for r in values['endpoint_rewrites']]

    @staticmethod
    def _coerce(key: str, value: Any) -> Any:
        # values given through '--var' always arrive as strings
        if not isinstance(value, str):
            return value
        properties: dict = Settings.schema['properties']
        declared = properties[key]['type'] if key in properties else None
        if declared == 'integer' and re.match(r'^-?\d+$', value.strip()):
            return int(value)
        elif declared == 'number' and re.match(r'^-?\d+(\.\d+)?$', value.strip()):
            return float(value)
        elif declared == 'array' and key == 'secret_source_namespaces':
            return [token.strip() for token in value.split(',') if token.strip()]
        elif isinstance(declared, list) and 'null' in declared and value == '':
            return None
        return value

    @property
    def state_dir(self) -> Path:
        return Path(os.path.expanduser(self._values['state_dir']))

    @property
    def validity_days(self) -> int:
        return self._values['validity_days']

    @property
    def cert_secret(self) -> str:
        return self._values['cert_secret']

    @property
    def secret_source_namespaces(self) -> Sequence[str]:
        return self._values['secret_source_namespaces']

    @property
    def endpoint_rewrites(self) -> Sequence[RewriteRule]:
        return self._rewrite_rules

    @property
    def ingress_class(self) -> Optional[str]:
        return self._values['ingress_class']

    @property
    def workload_image(self) -> str:
        return self._values['workload_image']

    @property
    def signer_name(self) -> str:
        return self._values['signer_name']

    @property
    def kubectl(self) -> str:
        return self._values['kubectl']

    @property
    def kubeconfig(self) -> Optional[str]:
        return self._values['kubeconfig']

    @property
    def command_timeout(self) -> float:
        return self._values['command_timeout']

    @property
    def cluster_retries(self) -> int:
        return self._values['cluster_retries']

    @property
    def retry_interval(self) -> float:
        return self._values['retry_interval']

    @property
    def issuance_timeout(self) -> float:
        return self._values['issuance_timeout']

    @property
    def provision_timeout(self) -> float:
        return self._values['provision_timeout']


class Context:

    def __init__(self, version_file_path: str = '/etc/onboard/VERSION', env: dict = os.environ) -> None:
        self._data = {}

        # read version
        if os.path.exists(version_file_path):
            with open(version_file_path, 'r') as f:
                self.add_variable('_version', f.read().strip())
        else:
            try:
                self.add_variable('_version', metadata.version('k8s-onboard'))
            except metadata.PackageNotFoundError:
                self.add_variable('_version', "0.0.0")

        # whether increased verbosity was requested
        self.add_variable('_verbose',
                          True if "VERBOSE" in env and env["VERBOSE"].lower() in ['1', 'yes', 'true'] else False)

        # work paths
        self.add_variable('_conf', env["CONF_DIR"] if 'CONF_DIR' in env else os.path.expanduser('~/.onboard'))
        self.add_variable('_workspace', env["WORKSPACE_DIR"] if 'WORKSPACE_DIR' in env else os.path.abspath('.'))
        self.add_variable('state_dir',
                          env["STATE_DIR"] if 'STATE_DIR' in env else os.path.expanduser('~/.onboard/state'))

    def load_auto_files(self) -> None:
        for directory in [self.conf_dir, self.workspace_dir]:
            if directory.exists() and directory.is_dir():
                for file in sorted(os.listdir(str(directory))):
                    if re.match(AUTO_FILE_PATTERN, file):
                        self.add_file(str(directory / file))

    @property
    def conf_dir(self) -> Path:
        return Path(self._data['_conf'])

    @property
    def workspace_dir(self) -> Path:
        return Path(self._data['_workspace'])

    @property
    def version(self) -> str:
        return self.data['_version']

    @property
    def verbose(self) -> bool:
        return self.data['_verbose']

    @verbose.setter
    def verbose(self, value: bool):
        self.add_variable('_verbose', value)

    def add_file(self, path: str) -> None:
        with open(path, 'r') as stream:
            try:
                source = yaml.safe_load(stream.read())
            except yaml.YAMLError as e:
                raise UserError(f"illegal config: malformed variables file at '{path}': {e}") from e
            if source is None:
                return
            elif not isinstance(source, dict):
                raise UserError(f"illegal config: variables file at '{path}' must contain a mapping")
            merge_into(self._data, util.post_process(value=source, context=self.data))

    def add_variable(self, key: str, value: Any) -> None:
        self._data[key] = value

    @property
    def data(self) -> dict:
        return self._data

    def settings(self) -> Settings:
        return Settings(self._data)

    def display(self) -> None:
        with Logger(header=f":clipboard: {underline('Context:')}") as logger:
            largest_name_length: int = len(max(list(self.data.keys()), key=lambda key: len(key)))
            for name in sorted(self.data.keys()):
                msg: str = f":point_right: {name.ljust(largest_name_length,'.')}..: {bold(str(self.data[name]))}"
                if name.startswith("_"):
                    msg = italic(msg)
                logger.info(msg)
