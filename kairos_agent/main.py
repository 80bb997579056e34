import argparse
import sys

from kairos_agent import __version__
from kairos_agent.actions import InstallAction, ResetAction, UpgradeAction
from kairos_agent.boot import list_boot_entries, select_boot_entry
from kairos_agent.config.settings import load_config
from kairos_agent.config.specs import build_install_spec, build_reset_spec, build_upgrade_spec
from kairos_agent.logging import LoggerFactory, operation_context, setup_logging
from kairos_agent.services.sysext import SysextManager
from kairos_agent.storage.exceptions import AgentError


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="kairos-agent", description="Kairos A/B image provisioning agent"
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-d", "--debug", action="store_true", help="Enable verbose debug output")
    parser.add_argument("--trace", action="store_true", help="Log raw command output")
    parser.add_argument(
        "--strict", action="store_true", help="Fail the operation when a hook fails"
    )
    parser.add_argument(
        "-c", "--config", action="append", default=[], help="Extra config file (repeatable)"
    )
    commands = parser.add_subparsers(dest="command", required=True)

    install = commands.add_parser("install", help="Install the system to a disk")
    install.add_argument("--device", default="", help="Target disk, 'auto' to detect")
    install.add_argument("--source", default="", help="Image source (oci:, dir:, file:)")
    install.add_argument("--recovery-source", default="", help="Recovery image source")
    install.add_argument("--iso", default="", help="Install from an ISO file or URL")
    install.add_argument("--cloud-init", action="append", default=[], help="Cloud-config file")
    install.add_argument("--no-format", action="store_true", help="Keep the existing layout")
    install.add_argument("--force", action="store_true", help="Install over a running deployment")
    _add_power_flags(install)

    upgrade = commands.add_parser("upgrade", help="Upgrade the Active or Recovery image")
    upgrade.add_argument("--source", default="", help="Image source (oci:, dir:, file:)")
    upgrade.add_argument("--recovery", action="store_true", help="Upgrade the Recovery image")
    _add_power_flags(upgrade)

    reset = commands.add_parser("reset", help="Reset the system from Recovery")
    reset.add_argument("--source", default="", help="Image source (oci:, dir:, file:)")
    reset.add_argument("--reset-oem", action="store_true", help="Also wipe the OEM partition")
    reset.add_argument(
        "--keep-persistent", action="store_true", help="Do not wipe the Persistent partition"
    )
    _add_power_flags(reset)

    bootentry = commands.add_parser("bootentry", help="List or select boot entries")
    bootentry_commands = bootentry.add_subparsers(dest="bootentry_command", required=True)
    bootentry_commands.add_parser("list", help="List boot entries")
    select = bootentry_commands.add_parser("select", help="Boot an entry next")
    select.add_argument("entry")

    sysext = commands.add_parser("sysext", help="Manage system extensions")
    sysext_commands = sysext.add_subparsers(dest="sysext_command", required=True)
    sysext_list = sysext_commands.add_parser("list", help="List system extensions")
    sysext_list.add_argument("--role", default="", help="Boot role to list")
    sysext_install = sysext_commands.add_parser("install", help="Install an extension")
    sysext_install.add_argument("uri")
    for name, help_text in (("enable", "Enable an extension"), ("disable", "Disable an extension")):
        command = sysext_commands.add_parser(name, help=help_text)
        command.add_argument("name")
        command.add_argument("--role", required=True, help="Boot role")
        command.add_argument("--now", action="store_true", help="Apply to the running system")
    remove = sysext_commands.add_parser("remove", help="Remove an extension")
    remove.add_argument("name")
    remove.add_argument("--now", action="store_true", help="Apply to the running system")
    return parser


def _add_power_flags(parser: argparse.ArgumentParser) -> None:
    power = parser.add_mutually_exclusive_group()
    power.add_argument("--reboot", action="store_true", help="Reboot when done")
    power.add_argument("--poweroff", action="store_true", help="Power off when done")


def run_command(args: argparse.Namespace) -> None:
    config = load_config(args.config)
    if args.strict:
        config.strict = True
    log = LoggerFactory.for_system()

    if args.command == "install":
        spec = build_install_spec(
            config,
            device=args.device,
            source=args.source,
            recovery_source=args.recovery_source,
            iso=args.iso,
            cloud_init=args.cloud_init,
            no_format=args.no_format or None,
            force=args.force or None,
            reboot=args.reboot or None,
            poweroff=args.poweroff or None,
        )
        with operation_context("install", device=spec.target or "auto"):
            InstallAction(config, spec).run()
    elif args.command == "upgrade":
        spec = build_upgrade_spec(
            config,
            source=args.source,
            recovery=args.recovery or None,
            reboot=args.reboot or None,
            poweroff=args.poweroff or None,
        )
        with operation_context("upgrade", recovery=spec.recovery_upgrade):
            UpgradeAction(config, spec).run()
    elif args.command == "reset":
        spec = build_reset_spec(
            config,
            source=args.source,
            reset_oem=args.reset_oem or None,
            reset_persistent=False if args.keep_persistent else None,
            reboot=args.reboot or None,
            poweroff=args.poweroff or None,
        )
        with operation_context("reset"):
            ResetAction(config, spec).run()
    elif args.command == "bootentry":
        if args.bootentry_command == "list":
            for entry in list_boot_entries(config.paths):
                print(entry)
        else:
            select_boot_entry(config.paths, args.entry)
            log.info(f"Default boot entry set to {args.entry}")
    elif args.command == "sysext":
        manager = SysextManager(config.paths)
        if args.sysext_command == "list":
            for extension in manager.list(args.role):
                print(extension.name)
        elif args.sysext_command == "install":
            manager.install(args.uri)
        elif args.sysext_command == "enable":
            manager.enable(args.name, args.role, now=args.now)
        elif args.sysext_command == "disable":
            manager.disable(args.name, args.role, now=args.now)
        else:
            manager.remove(args.name, now=args.now)


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(debug=args.debug, trace=args.trace)
    log = LoggerFactory.for_system()
    try:
        run_command(args)
    except (AgentError, OSError) as error:
        log.error(f"{args.command} failed: {error}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
