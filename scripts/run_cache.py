#!/usr/bin/env python3
"""
Run a reconciling access cache for one asset against a remote registry.

Reads account identities from stdin, one per line, and prints the
decision for each. Ctrl-C stops the cache and flushes buffered audit
entries before exiting.
"""

import argparse
import sys

from assetgate.core.cache import ReconcilingAccessCache
from assetgate.core.client import HttpRegistryClient
from assetgate.core.config import REGISTRY_URL, validate_cache_config


def main():
    """Main entry point for the cache process."""
    parser = argparse.ArgumentParser(description="Run a reconciling access cache for one asset")
    parser.add_argument("asset_key", help="Asset to guard")
    parser.add_argument("--identity", required=True, help="Account the cache reports audit entries as")
    parser.add_argument("--registry-url", default=REGISTRY_URL, help="Registry base URL")
    args = parser.parse_args()

    issues = validate_cache_config()
    if issues:
        print("❌ Cache configuration invalid:")
        for issue in issues:
            print(f"   - {issue}")
        sys.exit(1)

    client = HttpRegistryClient(args.registry_url, args.identity)
    cache = ReconcilingAccessCache(client, args.asset_key)

    try:
        cache.start()
        print(f"🔐 Guarding '{args.asset_key}' via {args.registry_url} (Ctrl-C to stop)")

        for line in sys.stdin:
            account = line.strip()
            if not account:
                continue
            granted = cache.validate_access(account)
            print(f"{'✅ granted' if granted else '⛔ denied'}: {account}")

    except KeyboardInterrupt:
        print("\n👋 Shutting down gracefully...")
    except Exception as e:
        print(f"💥 Critical error: {e}")
        cache.stop()
        sys.exit(1)

    cache.stop()
    status = cache.get_status()
    if status["pending_logs"]:
        print(f"⚠️  {status['pending_logs']} audit entries could not be flushed")


if __name__ == "__main__":
    main()
