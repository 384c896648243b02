#!/usr/bin/env python3
"""Registry maintainer CLI: key generation, manifest signing and verification"""

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import List, Optional

from pydantic import ValidationError

from cantonconnect.adapters.registry import AdapterLoadError, load_adapter
from cantonconnect.conformance import all_passed, run_conformance_checks
from cantonconnect.config import settings
from cantonconnect.core.errors import CantonConnectError
from cantonconnect.logging_config import setup_logging
from cantonconnect.registry.manifest import (
    TrustedRegistry,
    WalletManifest,
    build_document,
    split_document,
)
from cantonconnect.registry.signing import (
    generate_keypair,
    key_fingerprint,
    load_signing_key,
    sign_body,
)
from cantonconnect.registry.verifier import RegistryVerifier


def print_registry(registry: TrustedRegistry):
    """Pretty print a verified registry"""
    print(f"\n✅ Registry verified ({registry.channel} #{registry.sequence})")
    print("=" * 50)
    print(f"Published: {registry.metadata.published_at.isoformat()}")
    print(f"Signed by: {', '.join(registry.verified_by)}")
    print(f"Wallets:   {len(registry.entries)}")

    if registry.entries:
        print("-" * 50)
        for i, entry in enumerate(sorted(registry.wallets(), key=lambda e: e.id), 1):
            networks = ",".join(entry.supported_networks)
            print(f"{i:2d}. {entry.id:<20} {entry.name:<24} [{networks}]")
            if entry.capabilities:
                print(f"    capabilities: {', '.join(entry.capabilities)}")


def cli_keygen(out_dir: Optional[str]):
    """Generate an Ed25519 registry signing key pair"""
    private_key, public_key = generate_keypair()
    fingerprint = key_fingerprint(bytes(load_signing_key(private_key).verify_key))

    if out_dir:
        directory = Path(out_dir)
        directory.mkdir(parents=True, exist_ok=True)
        private_path = directory / f"registry-{fingerprint}.key"
        private_path.write_text(private_key + "\n", encoding="utf-8")
        private_path.chmod(0o600)
        (directory / f"registry-{fingerprint}.pub").write_text(public_key + "\n", encoding="utf-8")
        print(f"🔑 Wrote {private_path} (keep secret)")
    else:
        print(f"Private key: {private_key}")

    print(f"Public key:  {public_key}")
    print(f"Fingerprint: {fingerprint}")


def cli_sign(manifest_path: str, key_path: str, output: Optional[str], append: bool):
    """Sign a manifest body with one key"""
    raw = Path(manifest_path).read_text(encoding="utf-8")
    document = json.loads(raw)
    body = {"metadata": document.get("metadata"), "wallets": document.get("wallets")}

    # Refuse to sign something clients would reject
    WalletManifest.model_validate(body)

    signing_key = load_signing_key(Path(key_path).read_text(encoding="utf-8").strip())
    signature = sign_body(body, signing_key)

    signatures = list(document.get("signatures") or []) if append else []
    signatures = [s for s in signatures if s.get("keyFingerprint") != signature["keyFingerprint"]]
    signatures.append(signature)

    text = json.dumps(build_document(body, signatures), indent=2, ensure_ascii=False) + "\n"
    if output:
        Path(output).write_text(text, encoding="utf-8")
        print(f"✍️  Signed {manifest_path} -> {output} ({signature['keyFingerprint']})")
    else:
        sys.stdout.write(text)


def _verifier(public_keys: List[str], required: int, channel: Optional[str]) -> RegistryVerifier:
    return RegistryVerifier(
        public_keys or settings.registry_public_keys,
        registry_url=settings.registry_url,
        channel=channel or settings.registry_channel,
        required_signatures=required,
    )


def cli_verify(manifest_path: str, public_keys: List[str], required: int) -> bool:
    """Verify a manifest file offline"""
    raw = Path(manifest_path).read_text(encoding="utf-8")
    metadata = split_document(raw).body["metadata"]
    channel = metadata.get("channel") if isinstance(metadata, dict) else None
    registry = _verifier(public_keys, required, channel).verify_document(raw)
    print_registry(registry)
    return True


async def cli_wallets(channel: Optional[str], public_keys: List[str], required: int):
    """Fetch, verify and list the published registry"""
    verifier = _verifier(public_keys, required, channel)
    print(f"🔍 Fetching {verifier.manifest_url()}...")
    registry = await verifier.refresh()
    print_registry(registry)


async def cli_conformance(reference: str) -> bool:
    """Run adapter contract checks"""
    adapter = load_adapter(reference)
    results = await run_conformance_checks(adapter)

    print(f"\n🧪 Conformance: {adapter.wallet_id}")
    print("-" * 50)
    for result in results:
        mark = "✅" if result.passed else "❌"
        print(f"{mark} {result.name}")
        if result.error:
            print(f"    {result.error}")
    return all_passed(results)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="CantonConnect registry CLI")
    parser.add_argument("--log-level", default=None, help="Override CANTONCONNECT_LOG_LEVEL")
    subparsers = parser.add_subparsers(dest="command")

    keygen_parser = subparsers.add_parser("keygen", help="Generate a registry signing key pair")
    keygen_parser.add_argument("--out-dir", help="Write key files here instead of printing the private key")

    sign_parser = subparsers.add_parser("sign", help="Sign a registry manifest")
    sign_parser.add_argument("manifest", help="Manifest JSON file")
    sign_parser.add_argument("--key", required=True, help="File holding the base64 private seed")
    sign_parser.add_argument("-o", "--output", help="Output file (default: stdout)")
    sign_parser.add_argument("--append", action="store_true", help="Keep existing signatures from other keys")

    for name, help_text in (
        ("verify", "Verify a manifest file against trusted keys"),
        ("wallets", "Fetch and verify the published registry"),
    ):
        sub = subparsers.add_parser(name, help=help_text)
        if name == "verify":
            sub.add_argument("manifest", help="Manifest JSON file")
        else:
            sub.add_argument("--channel", choices=["stable", "beta"], help="Registry channel")
        sub.add_argument(
            "--public-key",
            action="append",
            default=[],
            help="Trusted base64 public key (repeatable; default: CANTONCONNECT_REGISTRY_PUBLIC_KEYS)",
        )
        sub.add_argument("--required", type=int, default=settings.registry_required_signatures,
                         help="Distinct valid signatures required")

    conformance_parser = subparsers.add_parser("conformance", help="Run adapter contract checks")
    conformance_parser.add_argument("adapter", help="Adapter reference, e.g. my_wallet.adapter:MyWalletAdapter")

    return parser


async def main() -> int:
    parser = build_parser()
    args = parser.parse_args()
    setup_logging(args.log_level)

    if not args.command:
        parser.print_help()
        return 0

    command = args.command.lower()

    try:
        if command == "keygen":
            cli_keygen(args.out_dir)

        elif command == "sign":
            cli_sign(args.manifest, args.key, args.output, args.append)

        elif command == "verify":
            cli_verify(args.manifest, args.public_key, args.required)

        elif command == "wallets":
            await cli_wallets(args.channel, args.public_key, args.required)

        elif command == "conformance":
            if not await cli_conformance(args.adapter):
                return 1

        else:
            print(f"❌ Unknown command: {command}")
            parser.print_help()
            return 2

    except CantonConnectError as e:
        print(f"❌ {e.code.value}: {e.message}")
        return 1
    except ValidationError as e:
        print(f"❌ Invalid manifest: {e.error_count()} error(s)\n{e}")
        return 1
    except (AdapterLoadError, ValueError, OSError) as e:
        print(f"❌ Error: {e}")
        return 1

    return 0


def run():
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
