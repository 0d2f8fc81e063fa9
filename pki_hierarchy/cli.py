"""
Operator command line for the PKI hierarchy.

Running ``pki`` without a command starts the interactive menu, which keeps CA
passphrases cached for the whole session.
"""

from contextlib import contextmanager
from enum import Enum
from pathlib import Path
from typing import List, Optional, Tuple

import pydantic
import typer

from pki_hierarchy import __version__
from pki_hierarchy.core.config import Settings, get_settings
from pki_hierarchy.core.exceptions import PkiError
from pki_hierarchy.core.logging import configure_logging
from pki_hierarchy.schemas.ca import CaRole, HierarchyNames, HierarchyState
from pki_hierarchy.schemas.certificate import (
    ArtifactPaths,
    CertificateRequest,
    IssuanceProfile,
    IssuedCertificateBundle,
    PrincipalClass,
)
from pki_hierarchy.services.hierarchy_manager import Hierarchy, HierarchyManager
from pki_hierarchy.services.issuance_engine import IssuanceEngine
from pki_hierarchy.services.ledger_store import LedgerStore
from pki_hierarchy.services.passphrase_vault import PassphraseVault

app = typer.Typer(help="Manage a root CA, its intermediate CAs and the certificates they issue.")
issue_app = typer.Typer(help="Issue end-entity certificates.")
app.add_typer(issue_app, name="issue")


class ServerCa(str, Enum):
    domain = "domain"
    servers = "servers"


_SERVER_ROLES = {
    ServerCa.domain: CaRole.INTERMEDIATE_DOMAIN,
    ServerCa.servers: CaRole.INTERMEDIATE_GENERIC_SERVER,
}


class Session:
    """Objects shared by the commands of one CLI invocation."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.vault = PassphraseVault()
        self.ledger_store = LedgerStore()
        self.manager = HierarchyManager(
            settings=settings, ledger_store=self.ledger_store, vault=self.vault,
        )
        self.engine = IssuanceEngine(self.manager)

    def close(self) -> None:
        self.vault.clear_all()
        self.ledger_store.close()


def _session(ctx: typer.Context) -> Session:
    return ctx.obj


def _report(error: Exception) -> None:
    typer.secho(f"[PKI] Error: {error}", fg=typer.colors.RED, err=True)


@contextmanager
def _handle_errors():
    """Turn domain errors into an error line and the matching exit code."""
    try:
        yield
    except PkiError as e:
        _report(e)
        raise typer.Exit(e.exit_code)
    except pydantic.ValidationError as e:
        _report(e)
        raise typer.Exit(2)


def _prompt_passphrase(text: str) -> str:
    return typer.prompt(text, hide_input=True)


def _confirm_overwrite(name: str, paths: ArtifactPaths) -> bool:
    existing = ", ".join(path.name for path in paths.existing())
    return typer.confirm(f"Certificate '{name}' already exists ({existing}). Overwrite?", default=False)


def _print_hierarchy(hierarchy: Hierarchy) -> None:
    typer.secho("PKI hierarchy ready:", fg=typer.colors.GREEN)
    for ca in hierarchy.authorities.values():
        typer.echo(f"  {ca.role.value:<28} {ca.name:<24} {ca.path}")


def _print_bundle(bundle: IssuedCertificateBundle) -> None:
    typer.secho(f"Issued {bundle.subject.common_name} (serial {bundle.serial}) by {bundle.ca_name}", fg=typer.colors.GREEN)
    typer.echo(f"  subject:   {bundle.subject_dn}")
    if bundle.san:
        typer.echo(f"  SAN:       {', '.join(bundle.san)}")
    typer.echo(f"  expires:   {bundle.certificate.not_valid_after_utc:%Y-%m-%d}")
    typer.echo(f"  key:       {bundle.paths.key}")
    typer.echo(f"  cert:      {bundle.paths.certificate}")
    typer.echo(f"  fullchain: {bundle.paths.fullchain}")


def _issue(session: Session, request: CertificateRequest, yes: bool) -> Optional[IssuedCertificateBundle]:
    confirm = (lambda name, paths: True) if yes else _confirm_overwrite
    bundle = session.engine.issue(
        request, passphrase_prompt=_prompt_passphrase, confirm_overwrite=confirm,
    )
    if bundle is None:
        typer.echo("Existing certificate kept, nothing issued.")
    else:
        _print_bundle(bundle)
    return bundle


def _setup(
    session: Session,
    root_name: str,
    domain_name: str,
    country: Optional[str],
    state: Optional[str],
    locality: Optional[str],
    force: bool,
) -> Optional[Hierarchy]:
    settings = session.settings
    names = HierarchyNames(
        root_name=root_name,
        domain_name=domain_name,
        country=country or settings.default_country,
        state=state or settings.default_state,
        locality=locality or settings.default_locality,
    )
    overwrite = force
    if not force and session.manager.exists():
        overwrite = typer.confirm(
            f"A PKI hierarchy already exists in {session.manager.pki_dir}. "
            "Discard it and create a new one?",
            default=False,
        )
        if not overwrite:
            typer.echo("Setup cancelled, existing hierarchy kept.")
            return None

    hierarchy = session.manager.setup(names, _prompt_passphrase, overwrite=overwrite)
    _print_hierarchy(hierarchy)
    return hierarchy


@app.callback(invoke_without_command=True)
def main_callback(
    ctx: typer.Context,
    pki_dir: Optional[Path] = typer.Option(None, "--pki-dir", help="PKI directory (default: $PKI_PKI_DIR or ./pki)"),
):
    """Manage a root CA, its intermediate CAs and the certificates they issue."""
    settings = get_settings()
    if pki_dir is not None:
        settings = settings.model_copy(update={"pki_dir": pki_dir})
    configure_logging(settings.log_level, settings.log_format)

    session = Session(settings)
    session.vault.install_exit_hooks()
    ctx.obj = session
    ctx.call_on_close(session.close)

    if ctx.invoked_subcommand is None:
        _run_menu(session)


@app.command()
def setup(
    ctx: typer.Context,
    root_name: str = typer.Option(..., "--root-name", prompt="Root CA name (e.g. ACME)"),
    domain_name: str = typer.Option(..., "--domain", prompt="Domain CA name (e.g. example.com)"),
    country: Optional[str] = typer.Option(None, "--country", help="Two-letter country code"),
    state: Optional[str] = typer.Option(None, "--state"),
    locality: Optional[str] = typer.Option(None, "--locality"),
    force: bool = typer.Option(False, "--force", help="Discard an existing hierarchy without asking"),
):
    """Create the root CA and the four intermediate CAs."""
    with _handle_errors():
        _setup(_session(ctx), root_name, domain_name, country, state, locality, force)


@issue_app.command("server")
def issue_server(
    ctx: typer.Context,
    common_name: str = typer.Argument(..., help="Host name, e.g. mail.example.com"),
    ca: ServerCa = typer.Option(ServerCa.domain, "--ca", help="Issue via the domain CA or the generic servers CA"),
    alt_name: List[str] = typer.Option([], "--alt-name", "-a", help="Additional DNS name (repeatable)"),
    ou: Optional[str] = typer.Option(None, "--ou", help="Organizational unit"),
    email: Optional[str] = typer.Option(None, "--email"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Overwrite an existing certificate without asking"),
):
    """Issue a TLS server certificate."""
    with _handle_errors():
        request = CertificateRequest(
            principal_class=PrincipalClass.SERVER,
            subject=common_name,
            organizational_unit=ou,
            email=email,
            alt_names=alt_name,
            server_ca=_SERVER_ROLES[ca],
        )
        _issue(_session(ctx), request, yes)


@issue_app.command("user")
def issue_user(
    ctx: typer.Context,
    full_name: str = typer.Argument(..., help="Full name, e.g. 'Fritz Meier'"),
    ou: Optional[str] = typer.Option(None, "--ou", help="Organizational unit"),
    email: Optional[str] = typer.Option(None, "--email"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Overwrite an existing certificate without asking"),
):
    """Issue a client and e-mail certificate for a person."""
    with _handle_errors():
        request = CertificateRequest(
            principal_class=PrincipalClass.USER, subject=full_name, organizational_unit=ou, email=email,
        )
        _issue(_session(ctx), request, yes)


@issue_app.command("device")
def issue_device(
    ctx: typer.Context,
    device_name: str = typer.Argument(..., help="Device name"),
    ou: Optional[str] = typer.Option(None, "--ou", help="Organizational unit"),
    email: Optional[str] = typer.Option(None, "--email"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Overwrite an existing certificate without asking"),
):
    """Issue a certificate for a machine."""
    with _handle_errors():
        request = CertificateRequest(
            principal_class=PrincipalClass.DEVICE, subject=device_name, organizational_unit=ou, email=email,
        )
        _issue(_session(ctx), request, yes)


@app.command()
def status(ctx: typer.Context):
    """Show the hierarchy state and the next serial of every CA."""
    session = _session(ctx)
    with _handle_errors():
        report = session.manager.status()
        typer.echo(f"PKI directory: {session.manager.pki_dir}")
        typer.echo(f"State:         {report.state.value}")
        if report.names is None:
            return
        hierarchy = session.manager.load()
        for role, ca in hierarchy.authorities.items():
            if role in report.created_roles:
                detail = f"next serial {session.ledger_store.next_serial(ca)}"
            else:
                detail = "missing"
            typer.echo(f"  {role.value:<28} {ca.name:<24} {detail}")


@app.command()
def ledger(
    ctx: typer.Context,
    ca: str = typer.Argument(..., help="CA name, role or directory, e.g. peoples"),
):
    """List every serial a CA has handed out."""
    session = _session(ctx)
    with _handle_errors():
        authority = session.manager.load().find(ca)
        entries = session.ledger_store.entries(authority)
        if not entries:
            typer.echo(f"{authority.name} has not issued any certificates.")
            return
        for entry in entries:
            expires = f"{entry.expires_at:%Y-%m-%d}" if entry.expires_at else "-"
            typer.echo(f"{entry.serial:>6}  {entry.status.value:<8} {expires:<10}  {entry.subject_dn or '-'}")


@app.command()
def revoke(
    ctx: typer.Context,
    ca: str = typer.Argument(..., help="Issuing CA"),
    serial: int = typer.Argument(..., help="Serial number"),
    reason: str = typer.Option("unspecified", "--reason"),
):
    """Mark a certificate as revoked in its CA's ledger."""
    with _handle_errors():
        entry = _session(ctx).engine.revoke(ca, serial, reason)
    typer.echo(f"Serial {entry.serial} revoked ({entry.revocation_reason}).")


@app.command("export-index")
def export_index(
    ctx: typer.Context,
    ca: str = typer.Argument(..., help="CA name, role or directory"),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Write to a file instead of stdout"),
):
    """Export a CA's ledger in OpenSSL index.txt format."""
    session = _session(ctx)
    with _handle_errors():
        authority = session.manager.load().find(ca)
        text = session.ledger_store.render_openssl_index(authority)
    if output is None:
        typer.echo(text, nl=False)
    else:
        output.write_text(text)
        typer.echo(f"Index written to {output}")


@app.command()
def menu(ctx: typer.Context):
    """Interactive session (default when no command is given)."""
    _run_menu(_session(ctx))


@app.command()
def version():
    typer.echo(f"pki-hierarchy {__version__}")


_MENU = """
==== PKI Management ====
 1) Setup PKI hierarchy
 2) Issue server certificate
 3) Issue user certificate
 4) Issue device certificate
 5) Show status
 0) Exit"""


def _menu_setup(session: Session) -> None:
    settings = session.settings
    root_name = typer.prompt("Root CA name (e.g. ACME)")
    domain_name = typer.prompt("Domain CA name (e.g. example.com)")
    country = typer.prompt("Country", default=settings.default_country)
    state = typer.prompt("State", default=settings.default_state)
    locality = typer.prompt("Locality", default=settings.default_locality)
    _setup(session, root_name, domain_name, country, state, locality, force=False)


def _prompt_overrides(profile: IssuanceProfile) -> Tuple[str, str]:
    """Ask for OU and e-mail; the profile defaults are offered."""
    ou = typer.prompt("Organizational unit", default=profile.default_organizational_unit or "")
    email = typer.prompt("E-mail address", default=profile.default_email or "")
    return ou, email


def _menu_issue_server(session: Session) -> None:
    hierarchy = session.manager.require_complete()
    typer.echo(f" 1) Domain CA ({hierarchy.authority(CaRole.INTERMEDIATE_DOMAIN).name})")
    typer.echo(f" 2) Servers CA ({hierarchy.authority(CaRole.INTERMEDIATE_GENERIC_SERVER).name})")
    choice = typer.prompt("Issue via", type=int, default=1)
    role = CaRole.INTERMEDIATE_GENERIC_SERVER if choice == 2 else CaRole.INTERMEDIATE_DOMAIN
    common_name = typer.prompt("Host name")
    ou, email = _prompt_overrides(hierarchy.catalog.profile_for(PrincipalClass.SERVER, role))
    alt_names = typer.prompt("Alternate DNS names (comma separated)", default="", show_default=False)
    request = CertificateRequest(
        principal_class=PrincipalClass.SERVER,
        subject=common_name,
        organizational_unit=ou,
        email=email,
        alt_names=alt_names,
        server_ca=role,
    )
    _issue(session, request, yes=False)


def _menu_issue(session: Session, principal_class: PrincipalClass, label: str) -> None:
    hierarchy = session.manager.require_complete()
    subject = typer.prompt(label)
    ou, email = _prompt_overrides(hierarchy.catalog.profile_for(principal_class))
    request = CertificateRequest(
        principal_class=principal_class, subject=subject, organizational_unit=ou, email=email,
    )
    _issue(session, request, yes=False)


def _menu_status(session: Session) -> None:
    report = session.manager.status()
    typer.echo(f"State: {report.state.value}")
    if report.state is not HierarchyState.ABSENT:
        typer.echo("Created: " + ", ".join(role.value for role in report.created_roles))


def _run_menu(session: Session) -> None:
    actions = {
        1: _menu_setup,
        2: _menu_issue_server,
        3: lambda s: _menu_issue(s, PrincipalClass.USER, "Full name"),
        4: lambda s: _menu_issue(s, PrincipalClass.DEVICE, "Device name"),
        5: _menu_status,
    }
    while True:
        typer.echo(_MENU)
        choice = typer.prompt("Select", type=int)
        if choice == 0:
            session.vault.clear_all()
            typer.echo("Passphrases cleared. Bye.")
            return
        if choice not in actions:
            typer.echo("Invalid choice.")
            continue
        try:
            actions[choice](session)
        except (PkiError, pydantic.ValidationError) as e:
            _report(e)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
