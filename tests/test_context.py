import re
from pathlib import Path

import pytest
from _pytest.capture import CaptureResult

from context import Context, Settings
from errors import InvalidInput
from util import UserError


@pytest.mark.parametrize("version_file", ["/unknown/file", "version"])
@pytest.mark.parametrize("verbose", ["true", "1", "0", "false"])
def test_new_context(tmp_path, version_file: str, verbose: str):
    if version_file == "version":
        version_file = str(tmp_path / 'VERSION')
        Path(version_file).write_text('1.2.3\n')

    context: Context = Context(version_file_path=version_file, env={
        "VERBOSE": verbose,
        "CONF_DIR": str(tmp_path / 'conf'),
        "WORKSPACE_DIR": str(tmp_path / 'workspace'),
        "STATE_DIR": str(tmp_path / 'state')
    })
    if version_file != "/unknown/file":
        assert context.version == '1.2.3'
    assert context.verbose == (verbose == "true" or verbose == "1" or verbose == "yes")
    assert context.conf_dir == tmp_path / 'conf'
    assert context.workspace_dir == tmp_path / 'workspace'
    assert context.settings().state_dir == tmp_path / 'state'


def test_verbose_setter():
    context: Context = Context(env={})
    assert not context.verbose

    context.verbose = True
    assert context.verbose


def test_load_auto_vars_files(tmp_path):
    conf_dir: Path = tmp_path / 'conf'
    workspace_dir: Path = tmp_path / 'workspace'
    conf_dir.mkdir()
    workspace_dir.mkdir()
    context: Context = Context(env={"CONF_DIR": str(conf_dir), "WORKSPACE_DIR": str(workspace_dir)})
    context.add_variable('foo1', 'foo1_original')
    context.add_variable('foo2', 'foo2_original')

    (conf_dir / 'vars.auto.yaml').write_text('foo1: bar1')
    (conf_dir / 'vars.notauto.yaml').write_text('foo2: will_not_be_added')
    (workspace_dir / 'vars.cluster.auto.yaml').write_text('foo2: bar2')
    (workspace_dir / 'vars.yaml').write_text('foo1: will_not_be_added')

    context.load_auto_files()
    assert context.data['foo1'] == 'bar1'
    assert context.data['foo2'] == 'bar2'


def test_load_auto_vars_files_missing_dirs():
    context: Context = Context(env={"CONF_DIR": "/unknown/conf", "WORKSPACE_DIR": "/unknown/workspace"})
    context.load_auto_files()
    assert 'foo1' not in context.data


@pytest.mark.parametrize("name,value", [("k1", "v1"), ("k1", ""), ("k1", None)])
def test_add_variable(name: str, value: str):
    context: Context = Context(env={})
    context.add_variable(name, value)
    assert context.data[name] == value


def test_add_file_not_existing():
    with pytest.raises(FileNotFoundError):
        Context(env={}).add_file('/unknown/dir/vars.yaml')


@pytest.mark.parametrize("content", ['foo: {{aaa}}}', 'foo: "{{aaa}}}"', 'foo: "{{aaa"', '- just\n- a list'])
def test_add_file_invalid(tmp_path, content: str):
    path: Path = tmp_path / 'vars.yaml'
    path.write_text(content)
    with pytest.raises(UserError):
        Context(env={}).add_file(str(path))


def test_var_referencing(tmp_path):
    path: Path = tmp_path / 'vars.yaml'
    path.write_text('s: abc\n'
                    'n: "{{ prev_n + 1 }}"\n'
                    'state_dir: "{{ _workspace }}/state"')
    context: Context = Context(env={"WORKSPACE_DIR": "/work"})
    context.add_variable('prev_n', 1)
    context.add_file(str(path))
    assert context.data['prev_n'] == 1
    assert context.data['n'] == 2
    assert context.data['s'] == 'abc'
    assert context.settings().state_dir == Path('/work/state')


@pytest.mark.parametrize("name,value", [("k1", "v1"), ("k1", "")])
def test_display(capsys, name: str, value: str):
    context: Context = Context(env={})
    context.add_variable(name, value)
    context.display()

    captured: CaptureResult = capsys.readouterr()
    assert [line for line in captured.out.split("\n") if re.match(r'.*' + name + r'.*' + value, line)]


def test_settings_defaults():
    settings: Settings = Settings({'state_dir': '/var/lib/onboard'})
    assert settings.state_dir == Path('/var/lib/onboard')
    assert settings.validity_days == 365
    assert settings.cert_secret == 'wildcard-cert'
    assert settings.secret_source_namespaces == ['cert-manager', 'kube-system']
    assert [(r.pattern, r.replacement) for r in settings.endpoint_rewrites] == [(r'0\.0\.0\.0', '127.0.0.1')]
    assert settings.ingress_class is None
    assert settings.workload_image == 'nginx:stable-alpine'
    assert settings.signer_name == 'kubernetes.io/kube-apiserver-client'
    assert settings.kubectl == 'kubectl'
    assert settings.kubeconfig is None
    assert settings.command_timeout == 30
    assert settings.cluster_retries == 3
    assert settings.issuance_timeout == 120
    assert settings.provision_timeout == 300


def test_settings_from_command_line_strings():
    settings: Settings = Settings({
        'state_dir': '/state',
        'validity_days': '30',
        'retry_interval': '0.5',
        'secret_source_namespaces': 'ingress-nginx, cert-manager',
        'ingress_class': '',
    })
    assert settings.validity_days == 30
    assert settings.retry_interval == 0.5
    assert settings.secret_source_namespaces == ['ingress-nginx', 'cert-manager']
    assert settings.ingress_class is None


@pytest.mark.parametrize("data,match", [
    ({}, r"state_dir"),
    ({'state_dir': '/state', 'validity_days': '0'}, r"validity_days"),
    ({'state_dir': '/state', 'validity_days': 'soon'}, r"validity_days"),
    ({'state_dir': '/state', 'command_timeout': 0}, r"command_timeout"),
    ({'state_dir': '/state', 'endpoint_rewrites': [{'pattern': 'x'}]}, r"endpoint_rewrites"),
    ({'state_dir': '/state', 'endpoint_rewrites': [{'pattern': '(', 'replacement': 'x'}]}, r"rewrite pattern"),
])
def test_settings_invalid(data: dict, match: str):
    with pytest.raises(InvalidInput, match=match):
        Settings(data)
