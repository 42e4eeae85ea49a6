"""Check a running relayer's status endpoint and flag operational problems."""
import argparse
import os
import sys
from decimal import Decimal, InvalidOperation

import httpx

DEFAULT_URL = os.environ.get("RELAYER_URL", "http://localhost:3001")
LOW_BALANCE = Decimal("0.01")
HTTP_TIMEOUT = 10.0


def check_relayer(url: str) -> int:
    """Print the relayer's status. Returns a process exit code."""
    print(f"Checking relayer status at: {url}")
    try:
        with httpx.Client(timeout=HTTP_TIMEOUT) as client:
            response = client.get(f"{url.rstrip('/')}/status")
    except httpx.HTTPError as e:
        print(f"Error connecting to relayer service: {e}")
        print("Make sure the relayer service is running at:", url)
        return 2

    if response.status_code != 200:
        print(f"Error: Got status {response.status_code} from relayer service")
        print("Response:", response.text)
        return 1

    result = response.json()
    print("\n==== Relayer Service Status ====")
    print(f"Status: {'ONLINE' if result.get('success') else 'OFFLINE'}")
    if not result.get("success"):
        return 1

    print(f"Address: {result['address']}")
    print(f"Authorized: {'YES' if result['authorized'] else 'NO'}")
    print(f"Balance: {result['balance']}")

    healthy = True
    try:
        balance = Decimal(result["balance"])
    except InvalidOperation:
        balance = Decimal(0)
    if balance < LOW_BALANCE:
        print("\nWARNING: Relayer balance is low! Add funds to continue processing votes.")
        healthy = False
    if not result["authorized"]:
        print("\nWARNING: Relayer is not authorized! It cannot submit votes until authorized.")
        healthy = False
    return 0 if healthy else 1


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Check relayer service status")
    parser.add_argument("--url", default=DEFAULT_URL, help="Relayer base URL")
    args = parser.parse_args(argv)
    return check_relayer(args.url)


if __name__ == "__main__":
    sys.exit(main())
