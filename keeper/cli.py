"""
Admin CLI for vault operators.

    python -m keeper.cli addresses [--program-id ID] [--chunks N]
    python -m keeper.cli discriminators
    python -m keeper.cli add-exclusion ADDRESS --list reward|tax [--authority NAME]
    python -m keeper.cli remove-exclusion ADDRESS --list reward|tax [--authority NAME]
    python -m keeper.cli preflight [--copy-to DIR]

Exit status is 0 on success and non-zero (with the error on stderr) otherwise.
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from typing import List, Optional

from solders.pubkey import Pubkey

from keeper.config.config import Settings
from keeper.config.config_store import ConfigStore, parse_pubkey
from keeper.core.json_utils import dumps_pretty
from keeper.errors import KeeperError
from keeper.ledger.client import LedgerClient, SolanaLedgerClient
from keeper.ledger.derivation import VaultAddresses, all_discriminators
from keeper.ledger.types import ConfirmationResult
from keeper.preflight.preflight import PreflightArtifact, PreflightChecker, PreflightConfig
from keeper.vault.gateway import ExclusionAction, ExclusionListKind, VaultGateway, VaultGatewayConfig

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_PREFLIGHT_FAILED = 2

LIST_KINDS = {"reward": ExclusionListKind.REWARD, "tax": ExclusionListKind.TAX}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="keeper-admin", description="Tax vault keeper administration")
    sub = parser.add_subparsers(dest="command", required=True)

    addr = sub.add_parser("addresses", help="Print every derived vault address")
    addr.add_argument("--program-id", help="Vault program id (default: from deployment state)")
    addr.add_argument("--chunks", type=int, default=1, help="Holder registry chunks to include")

    sub.add_parser("discriminators", help="Print vault instruction discriminators")

    for name, verb in (("add-exclusion", "Add"), ("remove-exclusion", "Remove")):
        p = sub.add_parser(name, help=f"{verb} an address on an exclusion list")
        p.add_argument("address", help="Wallet address")
        p.add_argument("--list", dest="list_kind", choices=sorted(LIST_KINDS), required=True,
                       help="reward: excluded from rewards, tax: exempt from transfer tax")
        p.add_argument("--authority", default=None, help="Keypair name of the signing authority (default: keeper)")

    pf = sub.add_parser("preflight", help="Run preflight checks and write the artifact")
    pf.add_argument("--copy-to", default=None, help="Also copy the artifact to this directory")
    return parser


def load_store(settings: Settings) -> ConfigStore:
    store = ConfigStore(settings.deployment_state_path, settings.keypair_dir)
    store.load()
    return store


def cmd_addresses(program_id: Pubkey, chunks: int) -> str:
    if chunks < 0:
        raise ValueError("--chunks must be >= 0")
    return dumps_pretty(VaultAddresses.for_program(program_id).to_dict(range(chunks)))


def cmd_discriminators() -> str:
    return dumps_pretty(all_discriminators())


async def cmd_manage_exclusion(
    settings: Settings,
    store: ConfigStore,
    ledger: LedgerClient,
    action: ExclusionAction,
    list_kind: ExclusionListKind,
    address: str,
    authority_name: Optional[str] = None,
) -> ConfirmationResult:
    target = parse_pubkey(address, "address")
    keeper = store.load_keypair(settings.keeper_keypair_name)
    authority = store.load_keypair(authority_name) if authority_name else keeper
    reward_mint = settings.reward_mint or store.get("reward_mint") or str(store.token_mint)
    gateway = VaultGateway(
        ledger,
        store.vault_program_id,
        store.token_mint,
        parse_pubkey(reward_mint, "reward_mint"),
        keeper,
        VaultGatewayConfig.from_settings(settings),
    )
    return await gateway.manage_exclusion(action, list_kind, target, authority=authority)


async def cmd_preflight(
    settings: Settings,
    store: ConfigStore,
    ledger: LedgerClient,
    copy_to: Optional[str] = None,
) -> PreflightArtifact:
    checker = PreflightChecker(ledger, store, PreflightConfig.from_settings(settings))
    artifact = await checker.run()
    if copy_to:
        checker.copy_artifact(copy_to)
    return artifact


def _ledger_for(settings: Settings) -> SolanaLedgerClient:
    return SolanaLedgerClient(
        settings.rpc_url,
        commitment=settings.commitment,
        rpc_timeout=settings.rpc_timeout_sec,
        priority_fee_micro_lamports=settings.priority_fee_micro_lamports,
    )


async def _run_with_ledger(args: argparse.Namespace, settings: Settings, store: ConfigStore) -> int:
    ledger = _ledger_for(settings)
    try:
        if args.command == "preflight":
            artifact = await cmd_preflight(settings, store, ledger, args.copy_to)
            print(dumps_pretty(artifact.to_dict()))
            return EXIT_OK if artifact.passed else EXIT_PREFLIGHT_FAILED
        action = ExclusionAction.ADD if args.command == "add-exclusion" else ExclusionAction.REMOVE
        result = await cmd_manage_exclusion(
            settings, store, ledger, action, LIST_KINDS[args.list_kind], args.address, args.authority
        )
        print(dumps_pretty(result.to_dict()))
        return EXIT_OK
    finally:
        await ledger.close()


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        if args.command == "discriminators":
            print(cmd_discriminators())
            return EXIT_OK

        settings = Settings.load()
        if args.command == "addresses":
            if args.program_id:
                program_id = parse_pubkey(args.program_id, "program_id")
            else:
                program_id = load_store(settings).vault_program_id
            print(cmd_addresses(program_id, args.chunks))
            return EXIT_OK

        store = load_store(settings)
        return asyncio.run(_run_with_ledger(args, settings, store))
    except (KeeperError, ValueError, OSError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return EXIT_ERROR


if __name__ == "__main__":
    sys.exit(main())
