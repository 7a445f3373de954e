#!/usr/bin/env python3

import argparse
import os
import traceback
from typing import Sequence, Optional

from colors import bold, underline, green, italic, faint

from cluster import ClusterServices
from context import Context, Settings
from errors import OnboardError, NotFound, failing_step
from ingress import IngressConfigurator
from issuer import CertificateIssuer
from packager import CredentialPackager
from provisioner import TenantProvisioner, ProvisionResult
from registry import LifecycleRegistry, RegistryEntry
from tenant import Tenant, Role, validate_username
from util import UserError, Logger


def parse_arguments(context: Context, argv: Sequence[str] = None):
    with Logger(indent_amount=0, spacious=False) as logger:

        class VariableAction(argparse.Action):

            def __init__(self, option_strings, dest, nargs=None, const=None, default=None, type=None, choices=None,
                         required=False, help=None, metavar=None):
                if const is not None:
                    raise ValueError("internal error: 'const' not allowed with VariableAction")
                if type is not None and type != str:
                    raise ValueError("internal error: 'type' must be 'str' (or None)")
                super().__init__(option_strings, dest, nargs, const, default, type, choices, required, help, metavar)

            def __call__(self, parser, namespace, values, option_string=None):
                tokens = values.split('=', 1)
                if len(tokens) != 2:
                    raise argparse.ArgumentTypeError(f"bad variable declaration: '{values}'")
                else:
                    var_name = tokens[0]
                    var_value = tokens[1]
                    if var_value and var_value[0] == '"' and var_value[-1] == '"':
                        var_value = var_value[1:-1]
                    context.add_variable(var_name, var_value)

        class VariablesFileAction(argparse.Action):

            def __init__(self, option_strings, dest, nargs=None, const=None, default=None, type=None, choices=None,
                         required=False, help=None, metavar=None):
                if const is not None:
                    raise ValueError("internal error: 'const' not allowed with VariableAction")
                if type is not None and type != str:
                    raise ValueError("internal error: 'type' must be 'str' (or None)")
                super().__init__(option_strings, dest, nargs, const, default, type, choices, required, help, metavar)

            def __call__(self, parser, namespace, values, option_string=None):
                if os.path.exists(values):
                    context.add_file(values)
                else:
                    logger.warn(f"Variables file '{values}' is missing!")

        # options accepted by every command
        common = argparse.ArgumentParser(add_help=False)
        common.add_argument('--var', action=VariableAction, metavar='NAME=VALUE', dest='context',
                            help='sets the given configuration variable')
        common.add_argument('--var-file', action=VariablesFileAction, metavar='FILE', dest='context',
                            help='loads configuration variables from the given YAML file')
        common.add_argument('-v', '--verbose', action='store_true', dest='verbose', help="increase verbosity")

        argparser = argparse.ArgumentParser(description=f"Kubernetes tenant onboarding tool, v{context.version}.")
        commands = argparser.add_subparsers(dest='command', metavar='COMMAND')
        commands.required = True

        provision = commands.add_parser('provision', parents=[common], help='provision (or reconcile) a tenant')
        provision.add_argument('username', help='tenant user name (a lower-case DNS label)')
        provision.add_argument('domain', help='base domain; the tenant is served at <username>.<domain>')
        provision.add_argument('--namespace', dest='namespace', metavar='NAME',
                               help='tenant namespace (defaults to the user name)')
        provision.add_argument('--role', dest='role', default=Role.DEVELOPER.value, metavar='ROLE',
                               help=f"tenant role: {', '.join(r.value for r in Role)} (default: developer)")
        provision.add_argument('--cert-secret', dest='cert_secret', metavar='NAME',
                               help='name of the wildcard TLS secret to route the subdomain with')
        provision.add_argument('--ingress-class', dest='ingress_class', metavar='NAME',
                               help='ingress class to use instead of the cluster default')

        deprovision = commands.add_parser('deprovision', parents=[common], help='delete a tenant and its resources')
        deprovision.add_argument('username', help='tenant user name')

        rotate = commands.add_parser('rotate', parents=[common],
                                     help='re-issue credentials and/or re-configure the ingress of a tenant')
        rotate.add_argument('username', help='tenant user name')
        rotate.add_argument('--credentials', action='store_true', dest='credentials',
                            help='re-issue the client certificate and kubeconfig')
        rotate.add_argument('--ingress', action='store_true', dest='ingress',
                            help='re-configure the ingress route')
        rotate.add_argument('--cert-secret', dest='cert_secret', metavar='NAME',
                            help='switch the ingress route to the given TLS secret (implies --ingress)')
        rotate.add_argument('--ingress-class', dest='ingress_class', metavar='NAME',
                            help='ingress class to use instead of the cluster default')

        commands.add_parser('list', parents=[common], help='list registered tenants')

        show = commands.add_parser('show', parents=[common], help="print a tenant's record & resource inventory")
        show.add_argument('username', help='tenant user name')

        return argparser.parse_args(argv)


def create_provisioner(settings: Settings, verbose: bool = False, cluster: ClusterServices = None) -> TenantProvisioner:
    if cluster is None:
        cluster = ClusterServices(kubectl=settings.kubectl,
                                  kubeconfig=settings.kubeconfig,
                                  timeout=settings.command_timeout,
                                  retries=settings.cluster_retries,
                                  retry_interval=settings.retry_interval,
                                  verbose=verbose)
    return TenantProvisioner(cluster=cluster,
                             registry=LifecycleRegistry(settings.state_dir),
                             issuer=CertificateIssuer(cluster, signer_name=settings.signer_name),
                             configurator=IngressConfigurator(cluster,
                                                              secret_source_namespaces=settings.secret_source_namespaces,
                                                              workload_image=settings.workload_image),
                             packager=CredentialPackager(rewrite_rules=settings.endpoint_rewrites),
                             provision_timeout=settings.provision_timeout,
                             issuance_timeout=settings.issuance_timeout)


def display_entry(entry: RegistryEntry) -> None:
    tenant: Optional[Tenant] = entry.tenant
    with Logger(header=f":bust_in_silhouette: {underline(entry.username)}", spacious=False) as logger:
        if tenant:
            logger.info(f":point_right: namespace.....: {bold(tenant.namespace)}")
            logger.info(f":point_right: role..........: {bold(tenant.role.value)}")
            logger.info(f":point_right: subdomain.....: {bold(tenant.subdomain)}")
            logger.info(f":point_right: tls secret....: {bold(tenant.cert_secret)}")
            logger.info(f":point_right: created.......: {tenant.created.isoformat()}")
            if tenant.cert_expiry:
                logger.info(f":point_right: cert expiry...: {tenant.cert_expiry.isoformat()}")
        if entry.updated:
            logger.info(italic(f":point_right: updated.......: {entry.updated.isoformat()}"))
        with Logger(header=f":package: Resources ({len(entry.resources)}):", spacious=False) as resources_logger:
            for ref in entry.resources:
                resources_logger.info(f"- {ref}")


def execute(args, settings: Settings, provisioner: TenantProvisioner) -> None:
    if args.command == 'provision':
        with failing_step('input validation', args.username):
            tenant: Tenant = Tenant(username=args.username,
                                    domain=args.domain,
                                    namespace=args.namespace,
                                    role=Role.parse(args.role),
                                    cert_secret=args.cert_secret if args.cert_secret else settings.cert_secret,
                                    validity_days=settings.validity_days)
        with Logger(header=f":rocket: Provisioning tenant '{bold(tenant.username)}'"):
            result: ProvisionResult = provisioner.provision(tenant,
                                                            ingress_class=args.ingress_class or settings.ingress_class)
        provisioner.summary(result)

    elif args.command == 'deprovision':
        with Logger(header=f":fire: Deprovisioning tenant '{bold(args.username)}'"):
            provisioner.deprovision(args.username)

    elif args.command == 'rotate':
        credentials: bool = args.credentials
        ingress: bool = args.ingress or bool(args.cert_secret) or bool(args.ingress_class)
        if not credentials and not ingress:
            credentials = ingress = True
        with Logger(header=f":arrows_counterclockwise: Rotating tenant '{bold(args.username)}'"):
            if credentials:
                provisioner.rotate_credentials(args.username)
            if ingress:
                provisioner.rotate_ingress(args.username,
                                           cert_secret=args.cert_secret,
                                           ingress_class=args.ingress_class or settings.ingress_class)

    elif args.command == 'list':
        entries: Sequence[RegistryEntry] = provisioner.registry.entries()
        with Logger(header=f":clipboard: {underline(f'Tenants ({len(entries)}):')}", spacious=False) as logger:
            for entry in entries:
                if entry.tenant:
                    logger.info(f":point_right: {bold(entry.username)} {faint(entry.tenant.role.value)} "
                                f"https://{entry.tenant.subdomain}")
                else:
                    logger.warn(f":point_right: {entry.username} (incomplete)")

    elif args.command == 'show':
        with failing_step('inspection', args.username):
            entry: Optional[RegistryEntry] = provisioner.registry.lookup(validate_username(args.username))
            if entry is None:
                raise NotFound(f"tenant '{args.username}' is not registered")
        display_entry(entry)

    else:
        raise UserError(f"unknown command: {args.command}")


def main(argv: Sequence[str] = None, env: dict = os.environ, cluster: ClusterServices = None):
    # create the shared context
    context: Context = Context(env=env)
    print('')
    with Logger(green(underline(bold(f":anchor: k8s-onboard v{context.version}")))) as logger:
        logger.info(f":wave: {bold('Welcome aboard!')}")

    try:
        # load the auto files from user home and cwd
        context.load_auto_files()

        # parse the command-line arguments, allowing them to override auto files
        args = parse_arguments(context, argv)
        context.verbose = context.verbose or args.verbose
        if context.verbose:
            context.display()

        settings: Settings = context.settings()
        provisioner: TenantProvisioner = create_provisioner(settings, verbose=context.verbose, cluster=cluster)
        execute(args, settings, provisioner)

    except OnboardError as e:
        with Logger(indent_amount=0, spacious=False) as logger:
            if context and context.verbose:
                logger.error(traceback.format_exc().strip())
            else:
                logger.error(e.message)
        exit(e.exit_code)

    except UserError as e:
        with Logger(indent_amount=0, spacious=False) as logger:
            if context and context.verbose:
                logger.error(traceback.format_exc().strip())
            else:
                logger.error(e.message)
        exit(1)

    except KeyboardInterrupt:
        with Logger(indent_amount=0, spacious=False) as logger:
            logger.error(f"Interrupted.")
        exit(1)

    except Exception:
        # always print stacktrace since this exception is an unexpected exception
        with Logger(indent_amount=0, spacious=False) as logger:
            logger.error(traceback.format_exc().strip())
        exit(1)


if __name__ == "__main__":
    main()
