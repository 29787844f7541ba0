"""
Command-line device: prints the user code and waits for the user to approve it on another screen.
"""
import argparse
import logging
import sys

from device_client.config import CLIENT_ID, DEFAULT_SCOPE, DEVICE_SERVER_URL
from device_client.poller import DeviceFlowClient, DeviceFlowError


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Sign in this device with a code entered on another screen.")
    parser.add_argument("--server", default=DEVICE_SERVER_URL)
    parser.add_argument("--client-id", default=CLIENT_ID)
    parser.add_argument("--scope", default=DEFAULT_SCOPE)
    parser.add_argument("-v", "--verbose", action="store_true")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO, format="%(levelname)s %(name)s: %(message)s")

    with DeviceFlowClient(args.server, args.client_id) as client:
        try:
            authorization = client.request_code(args.scope)
        except DeviceFlowError as e:
            print(f"Could not start sign-in: {e}", file=sys.stderr)
            return 1

        print(f"Go to {authorization.verification_uri} and enter the code: {authorization.user_code}")
        if authorization.verification_uri_complete:
            print(f"Or open {authorization.verification_uri_complete}")

        try:
            tokens = client.wait_for_tokens(authorization)
        except DeviceFlowError as e:
            print(f"Sign-in failed: {e}", file=sys.stderr)
            return 1

    print(f"Signed in. Access token expires in {tokens.expires_in}s.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
