from __future__ import annotations

import argparse
import getpass
import json
import logging
import os
import stat
import sys
from pathlib import Path

from nfse_consulta.models.invoice import InvoiceRecord
from nfse_consulta.services.exceptions import NfseError, NotConfiguredError

TARGET_LABELS = {"nacional": "NFS-e Nacional", "municipal": "NFS-e Municipal (Recife)"}


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
    """Remove a key from a .env file if present."""
    from dotenv import unset_key

    if env_file.exists():
        unset_key(str(env_file), key)


def _warn_open_permissions(env_file: Path) -> None:
    """Warn if .env file has group/other read permissions (Unix only)."""
    try:
        mode = env_file.stat().st_mode
        if mode & (stat.S_IRGRP | stat.S_IROTH):
            print(f"\n  AVISO: {env_file} tem permissões abertas.")
            print("  Recomendação: chmod 600", env_file)
    except OSError:
        pass


def _unique_path(path: Path) -> Path:
    """Return a non-conflicting path by appending _1, _2, etc. if needed."""
    if not path.exists():
        return path
    stem, suffix, parent = path.stem, path.suffix, path.parent
    counter = 1
    candidate = parent / f"{stem}_{counter}{suffix}"
    while candidate.exists():
        counter += 1
        candidate = parent / f"{stem}_{counter}{suffix}"
    return candidate


def _setup_certificate(config_dir: Path, target: str) -> bool:
    """Interactive certificate setup for one target. Returns True if cert was configured."""
    from nfse_consulta.services.exceptions import CertificateError
    from nfse_consulta.services.identity import CertificateIdentity
    from nfse_consulta.utils.certificate import read_pfx

    print()
    print(f"Certificado digital — {TARGET_LABELS[target]}")
    print("────────────────────────────────────")
    print()

    while True:
        pfx_path = input("Caminho do certificado .pfx/.p12 (vazio para pular): ").strip()
        if not pfx_path:
            print("  Configuração de certificado pulada.")
            return False
        if Path(pfx_path).is_file():
            break
        print(f"  Arquivo não encontrado: {pfx_path}")

    pfx_password = getpass.getpass("Senha do certificado: ")

    print()
    print("Validando certificado…")
    try:
        identity = CertificateIdentity.from_pfx(read_pfx(pfx_path), pfx_password, target)
    except CertificateError as e:
        print(f"  ERRO: {e}")
        print("  Configuração de certificado abortada.")
        return False

    print(f"  Titular: {identity.subject}")
    print(f"  Válido até: {identity.expires_at}")
    if identity.expired:
        print("  AVISO: Certificado expirado")
    else:
        print("  Certificado válido")

    env_file = config_dir / ".env"
    suffix = target.upper()
    _upsert_env_var(env_file, f"CERT_PFX_PATH_{suffix}", pfx_path)

    print()
    print("Onde deseja armazenar a senha?")

    keyring_ok = _check_keyring_available()
    options: list[tuple[str, str]] = []
    if keyring_ok:
        options.append(("1", "Keychain do sistema (recomendado)"))
    options.append(("2", "Arquivo .env no diretório de configuração"))
    options.append(("3", "Não armazenar (definir manualmente)"))

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

    from nfse_consulta.config import _delete_keyring_password, _set_keyring_password

    password_var = f"CERT_PFX_PASSWORD_{suffix}"
    if choice == "1" and keyring_ok:
        if _set_keyring_password(target, pfx_password):
            print("  Senha armazenada no keychain do sistema.")
            _remove_env_var(env_file, password_var)
        else:
            print("  ERRO: Falha ao armazenar no keychain. Salvando no .env como alternativa.")
            _upsert_env_var(env_file, password_var, pfx_password)
            _warn_open_permissions(env_file)
    elif choice == "2":
        _upsert_env_var(env_file, password_var, pfx_password)
        print(f"  Senha salva em {env_file}")
        _warn_open_permissions(env_file)
        _delete_keyring_password(target)
    else:
        _remove_env_var(env_file, password_var)
        _delete_keyring_password(target)
        print("  Senha não armazenada.")
        print(f"  Defina {password_var} no seu shell ou .env antes de usar.")

    return True


def _init_config() -> None:
    """Create config/data directories, settings.yaml and optionally certificates."""
    from nfse_consulta.config import get_config_dir, get_data_dir, save_settings

    config_dir = get_config_dir()
    data_dir = get_data_dir()
    config_dir.mkdir(parents=True, exist_ok=True)
    data_dir.mkdir(parents=True, exist_ok=True)

    settings_path = config_dir / "settings.yaml"
    if settings_path.exists():
        print(f"  já existe: {settings_path}")
    else:
        save_settings({"cnpj_prestador": "", "inscricao_municipal": ""})
        print(f"  criado: {settings_path}")

    print()
    print(f"Configuração: {config_dir}")
    print(f"Dados:   {data_dir}")

    configured: list[str] = []
    for target in ("nacional", "municipal"):
        print()
        try:
            answer = input(
                f"Deseja configurar o certificado {TARGET_LABELS[target]} agora? [S/n]: "
            ).strip().lower()
            if answer in ("", "s", "sim", "y", "yes") and _setup_certificate(config_dir, target):
                configured.append(target)
        except (EOFError, KeyboardInterrupt):
            print()
            break

    print()
    print("Próximos passos:")
    print(f"  1. Edite {settings_path} com o CNPJ e a inscrição municipal do prestador")
    if not configured:
        print("  2. Crie um .env com CERT_PFX_PATH e CERT_PFX_PASSWORD")
        print("  3. Execute: nfse-consulta status")
    else:
        print("  2. Execute: nfse-consulta status")


def _build_integration():
    """Wire the integration with local collaborators and env/keyring certificates."""
    from nfse_consulta import config
    from nfse_consulta.services.identity import TARGETS
    from nfse_consulta.services.integration import NfseIntegration
    from nfse_consulta.utils.certificate import read_pfx
    from nfse_consulta.utils.storage import JsonlAuditLog, LocalArtifactStore, LocalConfigStore

    settings = config.load_settings()
    integration = NfseIntegration(
        ambiente=config.get_ambiente(),
        inscricao_municipal=str(settings.get("inscricao_municipal") or ""),
        artifact_store=LocalArtifactStore(config.get_artifacts_dir()),
        audit_log=JsonlAuditLog(config.get_audit_log_path()),
        config_store=LocalConfigStore(config.get_config_store_path()),
    )
    integration.restore_certificates()
    for target in TARGETS:
        try:
            pfx_path = config.get_cert_path(target)
            password = config.get_cert_password(target)
        except KeyError:
            continue
        try:
            pfx_data = read_pfx(pfx_path)
        except OSError as e:
            print(f"Aviso: certificado {target} ilegível ({e})", file=sys.stderr)
            continue
        integration.configure_certificate(pfx_data, password, target)
    return integration, settings


def _print_records(records: list[InvoiceRecord], as_json: bool) -> None:
    from nfse_consulta.utils.formatters import format_brl, format_cnpj

    if as_json:
        print(json.dumps([r.to_dict() for r in records], indent=2, ensure_ascii=False))
        return
    if not records:
        print("Nenhuma NFS-e encontrada.")
        return
    for r in records:
        print(
            f"{r.numero:>8}  {r.data_emissao[:10]:<10}  {format_brl(r.valor):>16}  "
            f"{format_cnpj(r.cnpj_tomador):<18}  {r.razao_social_tomador[:40]}"
        )
    print(f"\n{len(records)} nota(s)")


def _cmd_status(args: argparse.Namespace) -> int:
    integration, _ = _build_integration()
    status = integration.status()
    if args.json:
        print(json.dumps(status.to_dict(), indent=2, ensure_ascii=False))
        return 0
    print(f"Ambiente nacional: {status.ambiente}")
    for target, channel in (("nacional", status.nacional), ("municipal", status.municipal)):
        if channel.configured:
            aviso = " (EXPIRADO)" if channel.expired else ""
            print(f"  {TARGET_LABELS[target]}: {channel.subject}, válido até {channel.expires_at}{aviso}")
        else:
            print(f"  {TARGET_LABELS[target]}: não configurado")
    return 0


def _cmd_nacional(args: argparse.Namespace) -> int:
    integration, settings = _build_integration()
    prestador = args.prestador or str(settings.get("cnpj_prestador") or "")
    records = integration.query_national(prestador, args.tomador, args.inicio, args.fim)
    _print_records(records, args.json)
    return 0


def _cmd_municipal(args: argparse.Namespace) -> int:
    integration, settings = _build_integration()
    prestador = args.prestador or str(settings.get("cnpj_prestador") or "")
    records = integration.query_municipal(
        prestador, args.inscricao, args.tomador, args.inicio, args.fim
    )
    _print_records(records, args.json)
    return 0


def _cmd_pdf(args: argparse.Namespace) -> int:
    integration, settings = _build_integration()
    if args.sistema == "nacional":
        if not args.chave:
            print("Erro: informe --chave", file=sys.stderr)
            return 2
        content = integration.fetch_rendered_document("nacional", args.chave)
        default_name = f"{args.chave}.pdf"
    else:
        if not (args.numero and args.codigo):
            print("Erro: informe --numero e --codigo", file=sys.stderr)
            return 2
        prestador = args.prestador or str(settings.get("cnpj_prestador") or "")
        inscricao = args.inscricao or integration.municipal.inscricao_municipal
        content = integration.fetch_rendered_document(
            "municipal", prestador, inscricao, args.numero, args.codigo
        )
        default_name = f"NFSe_{args.numero}.pdf"
    final_path = _unique_path(Path(args.output or default_name))
    final_path.write_bytes(content)
    print(f"PDF salvo em: {final_path}")
    return 0


def _cmd_lote(args: argparse.Namespace) -> int:
    from nfse_consulta.services.archive import BatchItem, archive_name

    integration, _ = _build_integration()
    raw = json.loads(Path(args.itens).read_text())
    if not isinstance(raw, list) or not all(isinstance(e, dict) and "id" in e for e in raw):
        raise ValueError(f"{args.itens}: esperada uma lista de objetos com 'id'")
    items = [
        BatchItem(
            id=str(entry["id"]),
            artifact_ref=entry.get("artifact_ref"),
            cnpj_tomador=entry.get("cnpj_tomador", ""),
            nome_tomador=entry.get("nome_tomador"),
            data_emissao=entry.get("data_emissao"),
        )
        for entry in raw
    ]
    output = _unique_path(Path(args.output or archive_name()))
    report = integration.export_batch_archive(items, output, actor=getpass.getuser())
    print(f"Lote salvo em: {output} ({report.count} de {report.requested} nota(s))")
    for skipped in report.skipped:
        print(f"  ignorada {skipped.item_id}: {skipped.reason}")
    return 0


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="nfse-consulta", description="Consulta de NFS-e")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init", help="Criar diretórios e configurar certificados")

    p_status = sub.add_parser("status", help="Situação dos certificados")
    p_status.add_argument("--json", action="store_true")
    p_status.set_defaults(func=_cmd_status)

    for name, func in (("nacional", _cmd_nacional), ("municipal", _cmd_municipal)):
        p = sub.add_parser(name, help=f"Consultar {TARGET_LABELS[name]}")
        p.add_argument("--prestador", help="CNPJ do prestador (padrão: settings.yaml)")
        p.add_argument("--tomador", help="CNPJ do tomador")
        p.add_argument("--inicio", help="Data inicial YYYY-MM-DD (padrão: 30 dias atrás)")
        p.add_argument("--fim", help="Data final YYYY-MM-DD (padrão: hoje)")
        p.add_argument("--json", action="store_true")
        if name == "municipal":
            p.add_argument("--inscricao", help="Inscrição municipal (padrão: settings.yaml)")
        p.set_defaults(func=func)

    p_pdf = sub.add_parser("pdf", help="Baixar PDF de uma NFS-e")
    p_pdf.add_argument("sistema", choices=("nacional", "municipal"))
    p_pdf.add_argument("--chave", help="Chave de acesso (nacional)")
    p_pdf.add_argument("--numero", help="Número da NFS-e (municipal)")
    p_pdf.add_argument("--codigo", help="Código de verificação (municipal)")
    p_pdf.add_argument("--prestador")
    p_pdf.add_argument("--inscricao")
    p_pdf.add_argument("-o", "--output")
    p_pdf.set_defaults(func=_cmd_pdf)

    p_lote = sub.add_parser("lote", help="Gerar ZIP com PDFs armazenados")
    p_lote.add_argument("itens", help="Arquivo JSON com a lista de notas")
    p_lote.add_argument("-o", "--output")
    p_lote.set_defaults(func=_cmd_lote)

    return parser


def main(argv: list[str] | None = None) -> None:
    """Entry point for the nfse-consulta CLI."""
    logging.basicConfig(
        level=os.environ.get("NFSE_LOG_LEVEL", "WARNING").upper(),
        format="%(levelname)s %(name)s: %(message)s",
    )
    args = _build_parser().parse_args(argv)

    if args.command == "init":
        _init_config()
        return

    try:
        code = args.func(args)
    except NotConfiguredError as e:
        print(f"Erro: {e}. Execute 'nfse-consulta init'.", file=sys.stderr)
        sys.exit(2)
    except (NfseError, ValueError, OSError) as e:
        print(f"Erro: {e}", file=sys.stderr)
        sys.exit(1)
    if code:
        sys.exit(code)


if __name__ == "__main__":
    main()
