# scripts/mint_token.py
import argparse  # parse CLI args
import os  # read environment variables

from boxoffice.security import mint_identity_token  # signs the bearer token


def main() -> None:
    parser = argparse.ArgumentParser(description="Mint a bearer token for an existing user")
    parser.add_argument("--user-id", required=True)  # becomes the token's subject
    parser.add_argument("--ttl-minutes", type=int, default=60)  # token lifetime
    args = parser.parse_args()

    secret = os.environ.get("AUTH_TOKEN_SECRET", "dev_auth_secret_change_me")  # must match the API's secret
    print(mint_identity_token(args.user_id, secret, ttl_minutes=args.ttl_minutes))


if __name__ == "__main__":
    main()
