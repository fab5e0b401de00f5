from __future__ import annotations

import argparse
import getpass
import json
import logging
import stat
import sys
import threading
from importlib.resources import files
from pathlib import Path

TEMPLATES = [
    ".env.example",
    "companies/1.yaml.example",
    "counterparties/1.yaml.example",
    "natures/1.yaml.example",
    "orders/1.yaml.example",
]

PENDING_POLL_SECONDS = 10.0


def _check_keyring_available() -> bool:
    """Check if keyring is installed with a usable backend."""
    try:
        import keyring
        from keyring.backends.fail import Keyring as FailKeyring

        return not isinstance(keyring.get_keyring(), FailKeyring)
    except Exception:
        return False


def _upsert_env_var(env_file: Path, key: str, value: str) -> None:
    """Set or update a key=value pair in a .env file, creating it if needed."""
    from dotenv import set_key

    env_file.parent.mkdir(parents=True, exist_ok=True)
    if not env_file.exists():
        env_file.touch()
    set_key(str(env_file), key, value)


def _remove_env_var(env_file: Path, key: str) -> None:
    from dotenv import unset_key

    if env_file.exists():
        unset_key(str(env_file), key)


def _warn_open_permissions(env_file: Path) -> None:
    """Warn if .env file has group/other read permissions (Unix only)."""
    try:
        mode = env_file.stat().st_mode
    except OSError:
        return
    if mode & (stat.S_IRGRP | stat.S_IROTH):
        print(f"\n  AVISO: {env_file} tem permissões abertas.")
        print("  Recomendação: chmod 600", env_file)


def _setup_token(config_dir: Path) -> bool:
    """Interactive global gateway token setup. Returns True if a token was stored."""
    from emissor_nfe.config import _delete_keyring_token, _set_keyring_token

    print()
    print("Token global do gateway (usado quando a empresa não tem token próprio)")
    print("──────────────────────────────────────────────────────────────────────")
    token = getpass.getpass("Token (vazio para pular): ").strip()
    if not token:
        print("  Configuração de token pulada.")
        return False

    env_file = config_dir / ".env"
    keyring_ok = _check_keyring_available()
    options: list[tuple[str, str]] = []
    if keyring_ok:
        options.append(("1", "Keychain do sistema (recomendado)"))
    options.append(("2", "Arquivo .env no diretório de configuração"))
    for num, label in options:
        print(f"  {num}. {label}")
    if not keyring_ok:
        print()
        print("  Nota: keychain do sistema indisponível (sem backend configurado).")

    print()
    valid_choices = {num for num, _ in options}
    choice = ""
    while choice not in valid_choices:
        choice = input(f"Escolha [{'/'.join(sorted(valid_choices))}]: ").strip()

    if choice == "1" and _set_keyring_token(token):
        print("  Token armazenado no keychain do sistema.")
        _remove_env_var(env_file, "NFE_GATEWAY_TOKEN")
        return True
    if choice == "1":
        print("  ERRO: Falha ao armazenar no keychain. Salvando no .env como alternativa.")
    _upsert_env_var(env_file, "NFE_GATEWAY_TOKEN", token)
    print(f"  Token salvo em {env_file}")
    _warn_open_permissions(env_file)
    _delete_keyring_token()
    return True


def _init_config() -> None:
    """Copy bundled record templates to the user's config/data directories."""
    from emissor_nfe.config import get_config_dir, get_data_dir

    config_dir = get_config_dir()
    data_dir = get_data_dir()
    templates = files("emissor_nfe") / "templates"

    data_dir.mkdir(parents=True, exist_ok=True)
    copied = 0
    for rel in TEMPLATES:
        dest = config_dir / rel
        if dest.exists():
            print(f"  já existe: {dest}")
            continue
        dest.parent.mkdir(parents=True, exist_ok=True)
        with (templates / rel).open("rb") as f:
            dest.write_bytes(f.read())
        print(f"  criado: {dest}")
        copied += 1

    print()
    print(f"Configuração: {config_dir}")
    print(f"Dados:   {data_dir}")

    try:
        answer = input("\nDeseja configurar o token do gateway agora? [S/n]: ").strip().lower()
        if answer in ("", "s", "sim", "y", "yes"):
            _setup_token(config_dir)
    except (EOFError, KeyboardInterrupt):
        print()

    print()
    if copied:
        print("Próximos passos:")
        print("  1. Renomeie os arquivos .yaml.example para .yaml e preencha os cadastros")
        print("  2. Execute: emissor-nfe preview <pedido> <empresa> <natureza>")
    else:
        print("Nenhum arquivo novo criado (todos já existiam).")


def _preflight() -> bool:
    """Verify there is at least one company record before touching the gateway."""
    from emissor_nfe.config import get_config_dir, get_data_dir
    from emissor_nfe.services.data_provider import list_ids

    get_data_dir().mkdir(parents=True, exist_ok=True)
    config_dir = get_config_dir()
    if not config_dir.is_dir():
        print(f"Erro: diretório de configuração não encontrado: {config_dir}")
        print("Execute 'emissor-nfe init' para criar os arquivos de exemplo.")
        return False
    if not list_ids("companies"):
        print(f"Erro: nenhuma empresa cadastrada em {config_dir / 'companies'}")
        print("Execute 'emissor-nfe init' e configure a empresa emitente.")
        return False
    return True


def _load_payload(path: str) -> dict:
    return json.loads(Path(path).read_text(encoding="utf-8"))


def _print_json(data: object) -> None:
    print(json.dumps(data, indent=2, ensure_ascii=False, default=str))


def _print_invoice(invoice) -> None:
    print(f"Nota {invoice.id}")
    print(f"  Status:     {invoice.status.value}")
    print(f"  Referência: {invoice.reference}")
    if invoice.number is not None:
        print(f"  Número:     {invoice.number} (série {invoice.series})")
    if invoice.document_key:
        print(f"  Chave:      {invoice.document_key}")
    if invoice.xml_path:
        print(f"  XML:        {invoice.xml_path}")
    if invoice.error_message:
        print(f"  Mensagem:   {invoice.error_message}")


def _make_queue():
    from emissor_nfe.services import emission
    from emissor_nfe.services.task_queue import TaskQueue

    return TaskQueue(emission.process_emission, on_failure=emission.mark_exhausted)


def _run_with_queue(action):
    """Run *action(queue)*, then wait for every job it enqueued."""
    queue = _make_queue()
    try:
        result = action(queue)
        queue.drain()
    finally:
        queue.shutdown()
    return result


# --- Commands ---


def _cmd_preview(args: argparse.Namespace) -> int:
    from emissor_nfe.services.emission import preview_document

    preview = preview_document(args.order, args.company, args.nature)
    _print_json(preview.document)
    if preview.errors:
        print("\nPendências:")
        for err in preview.errors:
            print(f"  - {err}")
        return 1
    return 0


def _cmd_emit(args: argparse.Namespace) -> int:
    from emissor_nfe.services import emission
    from emissor_nfe.utils.registry import get_invoice

    if args.payload:
        payload = _load_payload(args.payload)
        invoice = _run_with_queue(
            lambda q: emission.emit_with_payload(q, args.order, args.company, args.nature, payload)
        )
    else:
        invoice = _run_with_queue(lambda q: emission.emit(q, args.order, args.company, args.nature))
    _print_invoice(get_invoice(invoice.id) or invoice)
    return 0


def _cmd_draft(args: argparse.Namespace) -> int:
    from emissor_nfe.services.emission import save_draft

    _print_invoice(save_draft(args.order, args.company, args.nature, _load_payload(args.payload)))
    return 0


def _cmd_submit(args: argparse.Namespace) -> int:
    from emissor_nfe.services.emission import submit_draft
    from emissor_nfe.utils.registry import get_invoice

    invoice = _run_with_queue(lambda q: submit_draft(q, args.invoice))
    _print_invoice(get_invoice(invoice.id) or invoice)
    return 0


def _cmd_clone(args: argparse.Namespace) -> int:
    from emissor_nfe.services.emission import clone_invoice
    from emissor_nfe.utils.registry import get_invoice

    invoice = _run_with_queue(lambda q: clone_invoice(q, args.invoice))
    _print_invoice(get_invoice(invoice.id) or invoice)
    return 0


def _cmd_cancel(args: argparse.Namespace) -> int:
    from emissor_nfe.services.emission import cancel_invoice

    _print_invoice(cancel_invoice(args.invoice, " ".join(args.justification)))
    return 0


def _cmd_status(args: argparse.Namespace) -> int:
    from emissor_nfe.services.emission import invoice_timeline

    timeline = invoice_timeline(args.invoice)
    _print_invoice(timeline.invoice)
    print()
    for entry in timeline.entries:
        suffix = f" [{entry.status}]" if entry.status else ""
        print(f"  {entry.timestamp}  {entry.description}{suffix}")
    return 0


def _cmd_list(args: argparse.Namespace) -> int:
    from emissor_nfe.models.invoice import InvoiceStatus
    from emissor_nfe.utils.registry import list_invoices

    status = InvoiceStatus(args.status.upper()) if args.status else None
    for invoice in list_invoices(status):
        number = invoice.number if invoice.number is not None else "-"
        print(
            f"{invoice.id}  {invoice.status.value:<11} pedido {invoice.order_id:<6} "
            f"nº {number:<6} {invoice.total_value or ''}"
        )
    return 0


def _cmd_sync(args: argparse.Namespace) -> int:
    from emissor_nfe.services.reconciliation import sync_processing

    summary = sync_processing(args.min_age)
    print(f"Consultadas: {summary.queried}  Erros: {summary.errors}  Atualizadas: {summary.updated}")
    return 0


def _cmd_worker(args: argparse.Namespace) -> int:
    """Long-running process: emission queue, PENDING pickup, sweep and webhook."""
    from emissor_nfe.services.emission import requeue_pending
    from emissor_nfe.services.reconciliation import run_sync_loop

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logger = logging.getLogger("emissor_nfe.worker")

    stop = threading.Event()
    queue = _make_queue()
    threading.Thread(target=run_sync_loop, args=(stop,), name="sync", daemon=True).start()

    def pickup() -> None:
        while not stop.is_set():
            try:
                requeue_pending(queue)
            except Exception:
                logger.exception("Pending pickup failed")
            stop.wait(timeout=PENDING_POLL_SECONDS)

    threading.Thread(target=pickup, name="pending-pickup", daemon=True).start()
    try:
        if args.port:
            import uvicorn

            from emissor_nfe.webhook import app

            uvicorn.run(app, host=args.host, port=args.port)
        else:
            stop.wait()
    except KeyboardInterrupt:
        pass
    finally:
        stop.set()
        queue.shutdown(wait=True)
        logger.info("Worker stopped")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="emissor-nfe", description="Emissão de NF-e")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init", help="cria os arquivos de exemplo e configura o token")

    for name, help_text in (
        ("preview", "monta e valida o documento sem emitir"),
        ("emit", "emite a NF-e de um pedido"),
        ("draft", "salva um documento editado como rascunho"),
    ):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("order", type=int, help="id do pedido")
        p.add_argument("company", type=int, help="id da empresa emitente")
        p.add_argument("nature", type=int, help="id da natureza de operação")
        if name == "emit":
            p.add_argument("--payload", help="arquivo JSON com o documento editado")
        if name == "draft":
            p.add_argument("payload", help="arquivo JSON com o documento editado")

    for name, help_text in (
        ("submit", "envia um rascunho"),
        ("clone", "emite uma nova nota a partir do último documento enviado"),
        ("status", "mostra a nota e seu histórico"),
    ):
        sub.add_parser(name, help=help_text).add_argument("invoice", help="id da nota")

    p = sub.add_parser("cancel", help="cancela uma nota autorizada")
    p.add_argument("invoice", help="id da nota")
    p.add_argument("justification", nargs="+", help="justificativa (15 a 255 caracteres)")

    p = sub.add_parser("list", help="lista as notas")
    p.add_argument("--status", help="filtra por status (ex.: PROCESSANDO)")

    p = sub.add_parser("sync", help="consulta as notas em processamento")
    p.add_argument("--min-age", type=int, default=0, help="idade mínima em minutos")

    p = sub.add_parser("worker", help="processa a fila, o sync periódico e o webhook")
    p.add_argument("--host", default="127.0.0.1")
    p.add_argument("--port", type=int, default=0, help="porta do webhook (0 = desativado)")
    p.add_argument("-v", "--verbose", action="store_true")
    return parser


COMMANDS = {
    "preview": _cmd_preview,
    "emit": _cmd_emit,
    "draft": _cmd_draft,
    "submit": _cmd_submit,
    "clone": _cmd_clone,
    "cancel": _cmd_cancel,
    "status": _cmd_status,
    "list": _cmd_list,
    "sync": _cmd_sync,
    "worker": _cmd_worker,
}


def main(argv: list[str] | None = None) -> None:
    """Entry point for the emissor-nfe CLI."""
    from emissor_nfe.services.exceptions import EmissionError

    args = build_parser().parse_args(argv)
    if args.command == "init":
        _init_config()
        return
    if not _preflight():
        sys.exit(1)
    try:
        code = COMMANDS[args.command](args)
    except EmissionError as exc:
        print(f"Erro: {exc.message}")
        sys.exit(1)
    sys.exit(code)


if __name__ == "__main__":
    main()
