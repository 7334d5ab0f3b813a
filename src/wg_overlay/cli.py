import argparse
import logging
import sys
from pathlib import Path

from wg_overlay.clients import render_qr, save_qr_png
from wg_overlay.config import DEFAULT_PORT, Paths
from wg_overlay.engine import OverlayEngine
from wg_overlay.errors import EngineError, FirewallConflict
from wg_overlay.services import detect_wan_iface, list_interfaces, missing_tools


def _engine(args) -> OverlayEngine:
    paths = Paths.default()
    if args.wg_dir or args.rules_file:
        paths = Paths.from_root(
            Path(args.wg_dir) if args.wg_dir else paths.root,
            Path(args.rules_file) if args.rules_file else paths.rules_file,
        )
    return OverlayEngine(paths=paths)


def _confirm(question: str) -> bool:
    while True:
        try:
            answer = input(f"{question} [y/N] : ").strip().lower()
        except EOFError:
            return False
        if answer in ("y", "yes", "o", "oui"):
            return True
        if answer in ("", "n", "no", "non"):
            return False
        print("Répondre par y ou n.")


# ---------------------------------------------------
# Commande : install
# ---------------------------------------------------

def cmd_install(args, engine: OverlayEngine) -> int:
    missing = missing_tools()
    if missing:
        print(f"[ERREUR] Outils manquants : {', '.join(missing)}")
        print("    sudo apt install wireguard iptables")
        return 1

    iface = args.interface
    if iface is None:
        iface = detect_wan_iface()
        print(f"[*] Interface de sortie détectée : {iface}")
        others = [name for name, _ in list_interfaces() if name != iface]
        if others:
            print(f"    (autres interfaces : {', '.join(others)} ; utiliser --interface pour choisir)")

    reload_confirmed = False
    if args.reload_firewall:
        print("[!] --reload-firewall remplace TOUTE la table iptables live par le fichier persistant.")
        reload_confirmed = args.yes or _confirm("Continuer ?")

    print("[*] Installation du serveur WireGuard...")
    try:
        config = engine.install(iface, args.port, reload_firewall_confirmed=reload_confirmed)
    except FirewallConflict as e:
        print("[!] Des règles iptables existantes n'ont pas été créées par cet outil :")
        for rule in e.rules[:10]:
            print(f"    {rule}")
        if len(e.rules) > 10:
            print(f"    ... ({len(e.rules) - 10} de plus)")
        if not (args.yes or _confirm("Ignorer cet avertissement et continuer ?")):
            print("[ERREUR] Nettoyer les règles iptables avant de continuer.")
            return 1
        engine.guard.confirm_firewall_override()
        config = engine.install(iface, args.port, reload_firewall_confirmed=reload_confirmed)

    print("[+] Serveur installé.")
    print("[+] Adresse    :", config.address)
    print("[+] Port       :", config.listen_port)
    print("[+] Sortie NAT :", config.outbound_interface)
    print(f"[+] Fichier    : {engine.paths.config_file}")
    return 0


# ---------------------------------------------------
# Commande : add-client
# ---------------------------------------------------

def cmd_add_client(args, engine: OverlayEngine) -> int:
    endpoint = args.endpoint
    if endpoint is None:
        suggested = engine.suggest_endpoint()
        if sys.stdin.isatty():
            endpoint = input(f"Endpoint public du serveur (défaut : {suggested}) : ").strip() or suggested
        else:
            endpoint = suggested

    added = engine.add_client(args.name, endpoint)

    print(f"[+] Client ajouté : {added.peer.name} ({added.peer.address})")
    print(f"[+] Configuration : {added.conf_path}")
    if not args.no_qr:
        print(render_qr(added.conf))
        print("[+] QR code affiché ci-dessus, à scanner avec l'application WireGuard.")
    return 0


# ---------------------------------------------------
# Commande : list-clients
# ---------------------------------------------------

def cmd_list_clients(args, engine: OverlayEngine) -> int:
    peers = engine.list_clients()

    print("=== Clients ===")
    if not peers:
        print("Aucun client.")
    else:
        for p in peers:
            print(f"- {p.name} ({p.address})")
    return 0


# ---------------------------------------------------
# Commande : show-client
# ---------------------------------------------------

def cmd_show_client(args, engine: OverlayEngine) -> int:
    conf = engine.show_client(args.name)

    print(conf)
    if args.png:
        path = save_qr_png(conf, Path(args.png))
        print(f"[OK] QR code généré : {path}")
    elif not args.no_qr:
        print(render_qr(conf))
    print(f"[+] Fichier : {engine.paths.client_dir(args.name) / (args.name + '.conf')}")
    return 0


# ---------------------------------------------------
# Commande : delete-client
# ---------------------------------------------------

def cmd_delete_client(args, engine: OverlayEngine) -> int:
    if engine.delete_client(args.name):
        print(f"[OK] Client supprimé : {args.name}")
    else:
        print(f"[!] Client {args.name} introuvable, rien à supprimer.")
    return 0


# ---------------------------------------------------
# Commande : uninstall
# ---------------------------------------------------

def cmd_uninstall(args, engine: OverlayEngine) -> int:
    if not args.yes and not _confirm("Désinstaller WireGuard et supprimer toutes les configurations ?"):
        print("Abandon.")
        return 0

    report = engine.uninstall()

    print(f"[OK] {report.live_rules_removed} règle(s) iptables retirée(s).")
    if report.persisted_file_changed:
        print(f"[OK] Règles retirées de {engine.paths.rules_file}")
    for w in report.warnings:
        print(f"[!] {w}")
    print("[!] iptables n'est pas désinstallé : seules les règles WG_SCRIPT_MANAGED ont été retirées.")
    return 0


# ---------------------------------------------------
# CLI / Parser
# ---------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="wg-overlay")
    parser.add_argument("--wg-dir", help="répertoire de configuration (défaut /etc/wireguard)")
    parser.add_argument("--rules-file", help="fichier iptables persistant (défaut /etc/iptables/rules.v4)")
    parser.add_argument("-v", "--verbose", action="store_true")
    sub = parser.add_subparsers(dest="cmd")

    # install
    p_install = sub.add_parser("install")
    p_install.add_argument("--interface", help="interface de sortie pour le NAT")
    p_install.add_argument("--port", type=int, default=DEFAULT_PORT)
    p_install.add_argument("--yes", "-y", action="store_true")
    p_install.add_argument("--reload-firewall", action="store_true")
    p_install.set_defaults(func=cmd_install)

    # add-client
    p_add = sub.add_parser("add-client")
    p_add.add_argument("name")
    p_add.add_argument("--endpoint")
    p_add.add_argument("--no-qr", action="store_true")
    p_add.set_defaults(func=cmd_add_client)

    # list-clients
    p_list = sub.add_parser("list-clients")
    p_list.set_defaults(func=cmd_list_clients)

    # show-client
    p_show = sub.add_parser("show-client")
    p_show.add_argument("name")
    p_show.add_argument("--no-qr", action="store_true")
    p_show.add_argument("--png")
    p_show.set_defaults(func=cmd_show_client)

    # delete-client
    p_rm = sub.add_parser("delete-client")
    p_rm.add_argument("name")
    p_rm.set_defaults(func=cmd_delete_client)

    # uninstall
    p_un = sub.add_parser("uninstall")
    p_un.add_argument("--yes", "-y", action="store_true")
    p_un.set_defaults(func=cmd_uninstall)

    return parser


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        return 0

    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(asctime)s - %(levelname)s - %(message)s",
    )

    try:
        return args.func(args, _engine(args))
    except EngineError as e:
        print(f"[ERREUR] {e}")
        return 1
    except PermissionError as e:
        print(f"[ERREUR] {e} (lancer avec sudo)")
        return 1


if __name__ == "__main__":
    sys.exit(main())
