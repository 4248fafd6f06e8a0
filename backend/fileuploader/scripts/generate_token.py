"""Print a signed access token for local development."""

import argparse
from datetime import timedelta

from fileuploader.core.config import get_settings
from fileuploader.core.security import TokenService


def build_parser() -> argparse.ArgumentParser:
    settings = get_settings()
    parser = argparse.ArgumentParser(description="Generate a development access token")
    parser.add_argument("--subject", default="dev-user-123", help="Subject id embedded in the token")
    parser.add_argument(
        "--minutes",
        type=int,
        default=max(1, int(settings.token_lifetime.total_seconds() // 60)),
        help="Token lifetime in minutes",
    )
    parser.add_argument(
        "--base-url",
        default=f"http://localhost:{settings.port}",
        help="Service URL used in the printed usage example",
    )
    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.minutes < 1:
        parser.error("--minutes must be at least 1")
    settings = get_settings()
    token_service = TokenService(settings.jwt_secret_key, timedelta(minutes=args.minutes))
    token = token_service.issue(args.subject)
    claims = token_service.verify(token)

    print("Generated JWT token for development:")
    print(f"Subject: {claims.subject_id}")
    print(f"Expires: {claims.expires_at.isoformat()}")
    print()
    print("Token:")
    print(token)
    print()
    print("Usage example:")
    print(
        f'curl -H "Authorization: Bearer {token}" -F "file=@image.png" {args.base_url}/api/v1/upload'
    )


if __name__ == "__main__":
    main()
