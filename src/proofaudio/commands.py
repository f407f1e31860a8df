"""
proofaudio CLI commands: offline verification of audio proof bundles.

Commands:
  proofaudio verify        - Verify one bundle (directory, zip, sealed, manifest)
  proofaudio verify-batch  - Verify many bundles concurrently
  proofaudio seal          - Verify a standard bundle, then seal it with a password
  proofaudio version       - Show version info

Exit codes:
  0       verified
  1-10    failure kind (see proofaudio.errors)
  11      verified, but writing output failed
  12      usage error
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from proofaudio.config import ENV_PASSWORD

console = Console()
err_console = Console(stderr=True)

proofaudio_app = typer.Typer(
    name="proofaudio",
    help="Offline verifier for signed audio proof bundles",
    no_args_is_help=True,
)

EXIT_OK = 0
EXIT_WRITE_FAILED = 11
EXIT_USAGE = 12

OUTPUT_FORMATS = ("text", "json")

LIMITATIONS = (
    "Verification shows the audio bytes are unchanged since signing and that "
    "the signature matches the embedded key. It does not establish what was "
    "said, who is speaking, whether consent was given, or that the audio is "
    "not synthetic."
)


def _output_json(data: Dict[str, Any], exit_code: int = EXIT_OK) -> None:
    """Print structured JSON to stdout and exit with *exit_code*."""
    print(json.dumps(data, indent=2, default=str))
    raise typer.Exit(exit_code)


def _configure_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )


def _usage_error(message: str, output_json: bool) -> None:
    if output_json:
        _output_json({"status": "error", "error": message}, exit_code=EXIT_USAGE)
    console.print(f"[red]Error:[/] {message}")
    raise typer.Exit(EXIT_USAGE)


def _needs_password(path: Path) -> bool:
    from proofaudio.bundle import classify
    from proofaudio.errors import VerificationError

    try:
        return classify(path).is_sealed
    except VerificationError:
        # verify_bundle reports the same failure with its exit code.
        return False


# ---------------------------------------------------------------------------
# Text rendering
# ---------------------------------------------------------------------------

def _render_verified(result: Any) -> None:
    manifest = result.manifest
    level = result.trust_level
    summary = manifest.summary()

    console.print()
    console.print(Panel.fit(
        f"[bold green]VERIFIED[/]\n\n"
        f"[bold {level.style}]{level.display_name}: {level.label}[/]\n"
        f"{level.explanation}",
        title="proofaudio verify",
    ))

    rec = summary["recording"]
    recording = Table(title="Recording", show_header=False, box=None, padding=(0, 2))
    recording.add_row("Captured", f"{rec['captureStart']} -> {rec['captureEnd']}")
    recording.add_row("Duration", f"{rec['durationSeconds']:.1f}s")
    recording.add_row("Format", rec["audioFormat"])
    recording.add_row("Size", f"{rec['audioSizeBytes']} bytes")
    recording.add_row("Audio hash", rec["audioHash"])
    console.print(recording)

    ident = summary["identity"]
    identity = Table(title="Identity", show_header=False, box=None, padding=(0, 2))
    identity.add_row("Device key", ident["deviceKeyId"])
    identity.add_row("App", f"{ident['appBundleId']} {ident['appVersion']}")
    console.print(identity)

    tv = manifest.trust_vectors
    vectors = Table(title="Trust vectors", show_header=True, box=None, padding=(0, 2))
    vectors.add_column("Vector")
    vectors.add_column("Status")
    if tv.location is not None:
        vectors.add_row(
            "Location",
            f"{tv.location.start.lat:.5f}, {tv.location.start.lon:.5f} "
            f"(+/-{tv.location.start.accuracy:.0f}m)",
        )
    else:
        vectors.add_row("Location", "[dim]not recorded[/]")
    if tv.motion is not None:
        motion = "stationary" if tv.motion.is_stationary else "moving"
        vectors.add_row("Motion", f"{motion} ({tv.motion.sample_count} samples)")
    else:
        vectors.add_row("Motion", "[dim]not recorded[/]")
    if tv.continuity is not None:
        events = len(tv.continuity.interruption_events)
        state = "uninterrupted" if tv.continuity.uninterrupted else f"{events} interruption(s)"
        vectors.add_row("Continuity", state)
    else:
        vectors.add_row("Continuity", "[dim]not recorded[/]")
    if tv.clock is not None:
        vectors.add_row("Clock", f"{tv.clock.time_zone}, monotonic {tv.clock.monotonic_delta:.1f}s")
    else:
        vectors.add_row("Clock", "[dim]not recorded[/]")
    console.print(vectors)

    for w in result.warnings:
        console.print(f"  [yellow]Warning:[/] {w}")

    console.print()
    console.print(Panel(LIMITATIONS, title="Limitations", border_style="dim"))


def _render_failed(result: Any) -> None:
    from proofaudio.errors import REMEDIATIONS

    console.print()
    console.print(Panel.fit(
        f"[bold red]VERIFICATION FAILED[/]\n\n"
        f"{result.error_message}\n\n"
        f"Kind:       {result.error.value}\n"
        f"Exit code:  {result.exit_code}",
        title="proofaudio verify",
    ))
    remediation = REMEDIATIONS.get(result.error)
    if remediation:
        console.print(f"  {remediation}")
    if result.detail:
        console.print(f"  [dim]{result.detail}[/]")
    console.print()


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

@proofaudio_app.command("verify")
def verify_cmd(
    path: str = typer.Argument(..., help="Bundle directory, zip, .proofaudio file or manifest.json"),
    password: Optional[str] = typer.Option(
        None, "--password", "-p", envvar=ENV_PASSWORD,
        help="Password for sealed bundles. Prompted for when omitted.",
    ),
    extract: Optional[str] = typer.Option(
        None, "--extract", "-e",
        help="Write the decrypted audio of a verified sealed bundle to DIR.",
    ),
    output_format: str = typer.Option("text", "--format", "-f", help="Output format: text or json"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log pipeline stages to stderr"),
):
    """Verify a proof bundle.

    Exit codes: 0 verified, 1-10 failure kind, 11 extraction failed,
    12 usage error.
    """
    from proofaudio.errors import ExtractionError
    from proofaudio.secure import SecretBuffer
    from proofaudio.verify import verify_bundle

    output_json = output_format == "json"
    if output_format not in OUTPUT_FORMATS:
        _usage_error(f"--format must be one of {', '.join(OUTPUT_FORMATS)}, got {output_format!r}", False)
    _configure_logging(verbose)

    bundle_path = Path(path)
    sealed = _needs_password(bundle_path)
    if sealed and password is None:
        password = typer.prompt("Password", hide_input=True, default="", show_default=False, err=True)
    if extract and not sealed:
        note = "--extract only applies to sealed bundles; ignored."
        (err_console if output_json else console).print(f"[dim]Note: {note}[/]")
        extract = None

    try:
        with SecretBuffer.from_text(password) as pw:
            password = None
            result = verify_bundle(bundle_path, pw, extract_to=extract)
    except ExtractionError as e:
        if output_json:
            _output_json(
                {"command": "verify", "status": "error", "error": f"extraction failed: {e}"},
                exit_code=EXIT_WRITE_FAILED,
            )
        console.print(f"[red]Extraction failed:[/] {e}")
        raise typer.Exit(EXIT_WRITE_FAILED)

    if output_json:
        _output_json({"command": "verify", **result.to_dict()}, exit_code=result.exit_code)

    if result.verified:
        _render_verified(result)
        if result.extracted_path is not None:
            console.print(f"Audio extracted to [bold]{result.extracted_path}[/]")
            console.print(
                "[yellow]The extracted file on its own is no longer independently "
                "verifiable. Keep the sealed bundle.[/]"
            )
        console.print()
    else:
        _render_failed(result)
    raise typer.Exit(result.exit_code)


@proofaudio_app.command("verify-batch")
def verify_batch_cmd(
    paths: List[str] = typer.Argument(..., help="Bundles to verify"),
    password: Optional[str] = typer.Option(
        None, "--password", "-p", envvar=ENV_PASSWORD,
        help="Password used for every sealed bundle",
    ),
    workers: int = typer.Option(4, "--workers", "-w", help="Concurrent verifications"),
    output_json: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Verify several bundles concurrently.

    Exits 0 only if every bundle verifies; otherwise with the exit code of
    the first failure in argument order.
    """
    from proofaudio.verify import verify_many

    if workers < 1:
        _usage_error(f"--workers must be at least 1, got {workers}", output_json)

    results = verify_many(paths, password, max_workers=workers)
    exit_code = next((r.exit_code for r in results if not r.verified), EXIT_OK)
    passed = sum(1 for r in results if r.verified)

    if output_json:
        _output_json({
            "command": "verify-batch",
            "status": "verified" if exit_code == EXIT_OK else "failed",
            "total": len(results),
            "verified": passed,
            "results": [r.to_dict() for r in results],
        }, exit_code=exit_code)

    table = Table(title="proofaudio verify-batch")
    table.add_column("Bundle")
    table.add_column("Result")
    table.add_column("Detail")
    for r in results:
        if r.verified:
            table.add_row(
                r.path, "[green]VERIFIED[/]",
                f"[{r.trust_level.style}]{r.trust_level.display_name}[/]",
            )
        else:
            table.add_row(r.path, "[red]FAILED[/]", f"{r.error.value} (exit {r.exit_code})")
    console.print()
    console.print(table)
    console.print(f"\n{passed}/{len(results)} verified\n")
    raise typer.Exit(exit_code)


@proofaudio_app.command("seal")
def seal_cmd(
    bundle_path: str = typer.Argument(..., help="Standard bundle (directory or zip) to seal"),
    output: str = typer.Argument(..., help="Where to write the .proofaudio file"),
    password: Optional[str] = typer.Option(
        None, "--password", "-p", envvar=ENV_PASSWORD,
        help="Sealing password. Prompted for (with confirmation) when omitted.",
    ),
    kdf: str = typer.Option("pbkdf2", "--kdf", help="Key derivation: pbkdf2 or argon2id"),
    iterations: Optional[int] = typer.Option(
        None, "--iterations",
        help="KDF work factor (PBKDF2 iterations or Argon2id time cost)",
    ),
    output_json: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Seal a verified standard bundle into a password-protected file.

    The bundle is verified first; a bundle that fails is never sealed.
    """
    from proofaudio.bundle import load_bundle
    from proofaudio.errors import VerificationError
    from proofaudio.sealed import SUPPORTED_KDFS, seal_bundle
    from proofaudio.secure import SecretBuffer
    from proofaudio.verify import verify_audio_and_manifest

    if kdf not in SUPPORTED_KDFS:
        _usage_error(f"--kdf must be one of {', '.join(SUPPORTED_KDFS)}, got {kdf!r}", output_json)

    try:
        loaded = load_bundle(Path(bundle_path))
        if loaded.kind.is_sealed:
            _usage_error(f"{bundle_path} is already sealed", output_json)
        members = loaded.members
        verify_audio_and_manifest(members.audio, members.manifest)
    except VerificationError as e:
        if output_json:
            _output_json({"command": "seal", "status": "failed", **e.to_dict()}, exit_code=e.exit_code)
        console.print(f"[red]Not sealed:[/] {e.describe()}")
        if e.detail:
            console.print(f"  [dim]{e.detail}[/]")
        raise typer.Exit(e.exit_code)

    if password is None:
        password = typer.prompt("Password", hide_input=True, confirmation_prompt=True, err=True)
    if not password:
        _usage_error("password must not be empty", output_json)

    try:
        with SecretBuffer.from_text(password) as pw:
            password = None
            data = seal_bundle(
                members.audio, members.manifest, members.audio_name, pw,
                kdf_algorithm=kdf, iterations=iterations,
            )
    except ValueError as e:
        _usage_error(str(e), output_json)

    out_path = Path(output)
    try:
        out_path.write_bytes(data)
    except OSError as e:
        if output_json:
            _output_json({"command": "seal", "status": "error", "error": str(e)}, exit_code=EXIT_WRITE_FAILED)
        console.print(f"[red]Error:[/] cannot write {out_path}: {e}")
        raise typer.Exit(EXIT_WRITE_FAILED)

    if output_json:
        _output_json({
            "command": "seal",
            "status": "ok",
            "output": str(out_path),
            "kdf": kdf,
            "bytes": len(data),
        })

    console.print()
    console.print(Panel.fit(
        f"[bold green]SEALED[/]\n\n"
        f"Source:   {bundle_path}\n"
        f"Output:   {out_path}\n"
        f"KDF:      {kdf}\n"
        f"Size:     {len(data)} bytes",
        title="proofaudio seal",
    ))
    console.print()


@proofaudio_app.command("version")
def show_version(
    output_json: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Show proofaudio version and supported formats."""
    from proofaudio import __version__
    from proofaudio.config import CURRENT_BUNDLE_VERSION, CURRENT_SCHEMA_VERSION
    from proofaudio.sealed import SUPPORTED_KDFS

    if output_json:
        _output_json({
            "command": "version",
            "status": "ok",
            "version": __version__,
            "manifestSchemaVersion": CURRENT_SCHEMA_VERSION,
            "sealedBundleVersion": CURRENT_BUNDLE_VERSION,
            "kdfs": list(SUPPORTED_KDFS),
        })

    console.print(f"[bold]proofaudio {__version__}[/]")
    console.print("Offline verifier for signed audio proof bundles")
    console.print()
    console.print(f"  Manifest schema:  v{CURRENT_SCHEMA_VERSION}")
    console.print(f"  Sealed bundles:   v{CURRENT_BUNDLE_VERSION}")
    console.print(f"  KDFs:             {', '.join(SUPPORTED_KDFS)}")
