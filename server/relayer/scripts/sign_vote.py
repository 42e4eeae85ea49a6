"""Sign a vote authorization and print a submit-vote request body.

Useful for exercising a relayer by hand with a throwaway voter key.
"""
import argparse
import json
import os
import sys

from eth_account import Account

from relayer.services.signature import sign_vote


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Sign a gasless vote")
    parser.add_argument("--poll", type=int, required=True, help="Poll id")
    parser.add_argument("--candidate", type=int, required=True, help="Candidate index")
    parser.add_argument("--contract", required=True, help="Voting contract address")
    parser.add_argument("--chain-id", type=int, required=True, help="Chain id of the deployment")
    parser.add_argument(
        "--proof", nargs="*", default=[], help="Merkle proof elements for private polls"
    )
    args = parser.parse_args(argv)

    private_key = os.environ.get("VOTER_PRIVATE_KEY")
    if not private_key:
        print("VOTER_PRIVATE_KEY must be set", file=sys.stderr)
        return 1

    voter = Account.from_key(private_key).address
    signature = sign_vote(private_key, args.poll, args.candidate, args.contract, args.chain_id)
    body = {
        "pollId": args.poll,
        "candidateId": args.candidate,
        "voter": voter,
        "signature": signature,
        "merkleProof": args.proof,
    }
    print(json.dumps(body, indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
