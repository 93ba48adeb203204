#!/usr/bin/env python3
"""
Safe Keeper Startup Script

This script helps you safely start the keeper by:
1. Checking that the deployment state and keeper keypair exist
2. Preparing state/ and logs/ directories
3. Showing which network the keeper will sign on
4. Starting the keeper with proper error handling

The keeper itself still runs its full preflight before the first cycle.
"""

import os
import sys
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()


def check_deployment_state():
    """Verify the deployment state file exists."""
    path = Path(os.getenv('KEEPER_DEPLOYMENT_STATE', 'config/deployment-state.json'))

    if not path.exists():
        print(f"❌ ERROR: deployment state not found at {path}")
        print("\nDeploy the vault first, or point KEEPER_DEPLOYMENT_STATE at the file")
        return False

    print(f"✅ Deployment state present ({path})")
    return True


def check_keypair():
    """Verify the keeper keypair file exists (its contents are checked at preflight)."""
    keypair_dir = Path(os.getenv('KEEPER_KEYPAIR_DIR', 'keypairs'))
    name = os.getenv('KEEPER_KEYPAIR_NAME', 'keeper')
    path = keypair_dir / f"{name}-keypair.json"

    if not path.exists():
        print(f"❌ ERROR: keeper keypair not found at {path}")
        print("  Secrets never live in the deployment state; place the keypair file here")
        return False

    print("✅ Keeper keypair present")
    return True


def check_state_directory():
    """Ensure the runtime state directory exists."""
    state_path = Path(os.getenv('KEEPER_RUNTIME_STATE', 'state/keeper-runtime.json'))
    state_path.parent.mkdir(parents=True, exist_ok=True)

    print("✅ State directory ready")
    return True


def check_logs_directory():
    """Ensure the logs directory exists."""
    log_file = os.getenv('KEEPER_LOG_FILE')
    logs_dir = Path(log_file).parent if log_file else Path('logs')
    logs_dir.mkdir(parents=True, exist_ok=True)

    print("✅ Logs directory ready")
    return True


def get_network_mode():
    """Report the configured network; True when it is not mainnet."""
    network = os.getenv('KEEPER_NETWORK', 'devnet')
    rpc_url = os.getenv('KEEPER_RPC_URL', 'https://api.devnet.solana.com')
    safe = network != 'mainnet-beta'
    color = '🟡' if safe else '🔴'

    print(f"\n{color} Running on: {network}")
    print(f"   RPC: {rpc_url}")

    if not safe:
        print("   ⚠️  MAINNET (real holder rewards!)")
        print("   ⚠️  Make sure the same deployment ran cleanly on devnet first!")

    return safe


def confirm_startup(auto_confirm: bool = False):
    """Get operator confirmation before starting."""
    print("\n" + "=" * 60)
    print("STARTUP CHECKS")
    print("=" * 60)

    checks = [
        check_deployment_state,
        check_keypair,
        check_state_directory,
        check_logs_directory,
    ]

    all_passed = True
    for check_func in checks:
        if not check_func():
            all_passed = False

    if not all_passed:
        print("\n❌ Startup checks FAILED")
        print("Fix errors above and try again")
        return False

    print("\n✅ All startup checks passed!")

    safe = get_network_mode()

    # Skip confirmation if auto_confirm (for systemd)
    if auto_confirm:
        print("\n✅ Auto-confirm enabled (--no-confirm)")
        print("✅ Starting keeper...")
        return True

    print("\n" + "=" * 60)
    print("STARTUP CONFIRMATION")
    print("=" * 60)

    print("\nBefore starting, confirm:")
    print("  □ The reward mint and slippage settings are correct")
    print("  □ Exclusion lists contain the pools and treasury wallets")
    if not safe:
        print("  □ You understand distributions are irreversible")

    response = input("\nType 'START' to continue: ").strip().upper()

    if response != 'START':
        print("❌ Startup cancelled")
        return False

    print("\n✅ Starting keeper...")
    return True


def main():
    """Run startup checks and start the keeper."""
    import argparse

    parser = argparse.ArgumentParser(description='Tax Vault Keeper')
    parser.add_argument('--no-confirm', action='store_true',
                        help='Skip startup confirmation (for systemd/automated use)')
    args = parser.parse_args()

    if not confirm_startup(auto_confirm=args.no_confirm):
        sys.exit(1)

    from keeper.main import run
    run()


if __name__ == '__main__':
    main()
