import argparse
import logging
import sys
from pathlib import Path

from wg_core.keys import KeyProvider
from wg_core.qr import render_qr
from wg_registry.errors import AlreadyExists, InvalidArgument, WgConfigError
from wg_registry.interfaces import InterfaceRegistry
from wg_registry.netstack import NetworkStackControl
from wg_registry.peers import PeerRegistry, run_each
from wg_registry.settings import load_settings, split_list
from wg_registry.store import ConfigStore


class App:
    def __init__(self, settings, keys=None, net=None):
        self.settings = settings
        self.store = ConfigStore(settings)
        self.keys = keys or KeyProvider()
        self.net = net or NetworkStackControl(settings)
        self.peers = PeerRegistry(self.store, self.keys, self.net, settings)
        self.interfaces = InterfaceRegistry(self.store, self.keys, self.net)


def make_app(settings):
    return App(settings)


def _error(msg):
    print(f"[ERREUR] {msg}", file=sys.stderr)


def _names(value, flag):
    names = split_list(value or "")
    if not names:
        raise InvalidArgument(f"{flag} is required")
    return names


def _single_interface(args):
    names = _names(args.interface, "-i")
    if len(names) != 1:
        raise InvalidArgument("Exactly one interface expected (-i)")
    return names[0]


def _report(outcomes, ok_message):
    failed = 0
    for o in outcomes:
        if o.ok:
            print(ok_message(o))
        elif isinstance(o.error, AlreadyExists):
            print(f"[!] {o.error}", file=sys.stderr)
            failed += 1
        else:
            _error(o.error)
            failed += 1
    return 1 if failed else 0


# ---------------------------------------------------
# Commande : addif
# ---------------------------------------------------

def cmd_addif(app, args):
    name = _single_interface(args)
    config = app.interfaces.add_interface(name, args.address, args.port, args.private_key)

    print(f"[+] Interface créée : {config.name}")
    print(f"[+] Adresse : {config.address}")
    print(f"[+] Port    : {config.listen_port}")
    print(f"[+] Fichier : {app.store.context(name).conf_path}")
    return 0


# ---------------------------------------------------
# Commande : rmif
# ---------------------------------------------------

def cmd_rmif(app, args):
    outcomes = app.interfaces.remove_interfaces(_names(args.interface, "-i"))
    return _report(outcomes, lambda o: f"[OK] Interface supprimée : {o.name}")


# ---------------------------------------------------
# Commande : adduser
# ---------------------------------------------------

def cmd_adduser(app, args):
    interface = _single_interface(args)
    users = _names(args.user, "-u")
    dns = split_list(args.dns) if args.dns else None

    outcomes = app.peers.add_peers(interface, users, dns=dns)
    return _report(
        outcomes,
        lambda o: f"[+] Peer ajouté : {o.name} ({o.result.address}) -> {o.result.config_path}",
    )


# ---------------------------------------------------
# Commande : rmuser
# ---------------------------------------------------

def cmd_rmuser(app, args):
    interface = _single_interface(args)
    outcomes = app.peers.remove_peers(interface, _names(args.user, "-u"))
    return _report(outcomes, lambda o: f"[OK] Peer supprimé : {o.result.name} ({o.result.address})")


# ---------------------------------------------------
# Commande : list
# ---------------------------------------------------

def cmd_list(app, args):
    if not args.interface:
        outcomes = app.interfaces.list_interfaces()
        if not outcomes:
            print("Aucune interface.")
            return 0
        return _report(
            outcomes,
            lambda o: f"{o.name}\t{o.result.address}\tport {o.result.listen_port}\t"
                      f"{len(o.result.peers)} peer(s)",
        )

    for interface in _names(args.interface, "-i"):
        print(f"=== {interface} ===")
        peers = app.peers.list_peers(interface)
        if not peers:
            print("Aucun peer.")
        for p in peers:
            print(f"- {p.name} ({p.address}) {p.public_key}")
    return 0


# ---------------------------------------------------
# Commande : show
# ---------------------------------------------------

def cmd_show(app, args):
    interface = _single_interface(args)

    if not args.user:
        if app.net.is_up(interface):
            print(app.net.show(interface), end="")
            return 0
        config = app.store.read_interface(interface)
        print(f"Interface : {config.name} (down)")
        print(f"Adresse   : {config.address}")
        print(f"Port      : {config.listen_port}")
        print(f"Clé pub.  : {app.interfaces.public_key(config)}")
        print(f"Peers     : {len(config.peers)}")
        return 0

    def show_one(name):
        conf = app.peers.peer_config(interface, name)
        print(f"--- {name} ---")
        print(conf)
        if not args.no_qr:
            qr = render_qr(conf)
            if qr is None:
                print("[!] QR code indisponible (module qrcode absent)", file=sys.stderr)
            else:
                print(qr)
        return conf

    failed = 0
    for o in run_each(_names(args.user, "-u"), show_one):
        if not o.ok:
            _error(o.error)
            failed += 1
    return 1 if failed else 0


# ---------------------------------------------------
# CLI / Parser
# ---------------------------------------------------

def build_parser():
    parser = argparse.ArgumentParser(prog="wg-config")
    parser.add_argument("-c", "--config", help="settings file (default /usr/local/etc/wg-config.conf)")
    parser.add_argument("-v", "--verbose", action="store_true")
    sub = parser.add_subparsers(dest="cmd")

    # addif
    p_addif = sub.add_parser("addif", help="create an interface")
    p_addif.add_argument("-i", dest="interface", required=True)
    p_addif.add_argument("-a", dest="address", required=True)
    p_addif.add_argument("-p", dest="port", type=int, required=True)
    p_addif.add_argument("-P", dest="private_key")
    p_addif.set_defaults(func=cmd_addif)

    # rmif
    p_rmif = sub.add_parser("rmif", help="remove interfaces")
    p_rmif.add_argument("-i", dest="interface", required=True)
    p_rmif.set_defaults(func=cmd_rmif)

    # adduser
    p_add = sub.add_parser("adduser", help="add peers to an interface")
    p_add.add_argument("-i", dest="interface", required=True)
    p_add.add_argument("-u", dest="user", required=True)
    p_add.add_argument("-d", dest="dns")
    p_add.set_defaults(func=cmd_adduser)

    # rmuser
    p_rm = sub.add_parser("rmuser", help="remove peers from an interface")
    p_rm.add_argument("-i", dest="interface", required=True)
    p_rm.add_argument("-u", dest="user", required=True)
    p_rm.set_defaults(func=cmd_rmuser)

    # list
    p_list = sub.add_parser("list", help="list interfaces, or the peers of -i")
    p_list.add_argument("-i", dest="interface")
    p_list.set_defaults(func=cmd_list)

    # show
    p_show = sub.add_parser("show", help="show an interface, or peer configs with -u")
    p_show.add_argument("-i", dest="interface", required=True)
    p_show.add_argument("-u", dest="user")
    p_show.add_argument("--no-qr", action="store_true")
    p_show.set_defaults(func=cmd_show)

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help(sys.stderr)
        return 2

    try:
        settings = load_settings(Path(args.config) if args.config else None)
    except WgConfigError as e:
        _error(e)
        return e.exit_code

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else settings.log_level,
        format="%(levelname)s %(name)s: %(message)s",
    )

    app = make_app(settings)
    try:
        return args.func(app, args)
    except WgConfigError as e:
        _error(e)
        return e.exit_code


if __name__ == "__main__":
    sys.exit(main())
