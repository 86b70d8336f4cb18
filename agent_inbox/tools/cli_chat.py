#!/usr/bin/env python3
import argparse, sys, time, uuid

import requests

from agent_inbox.providers.twilio import compute_signature


def sign_form(url, params, token):
    return {"X-Twilio-Signature": compute_signature(token, url, params)} if token else {}


def post_form(base, path, params, token, public_base=None):
    url = f"{base}{path}"
    signed_url = f"{public_base or base}{path}"
    r = requests.post(url, data=params, headers=sign_form(signed_url, params, token), timeout=60)
    r.raise_for_status()
    return r.text


def main():
    p = argparse.ArgumentParser(description="Terminal simulator for the inbound SMS webhook.")
    p.add_argument("--base", default="http://127.0.0.1:8000", help="API base URL")
    p.add_argument("--public-base", default=None, help="URL the server signs against (PUBLIC_BASE_URL), if different")
    p.add_argument("--from", dest="from_", required=True, help="Phone number to simulate (e.g. +15551234567)")
    p.add_argument("--to", default="+15550000000", help="Our number")
    p.add_argument("--token", default="", help="Auth token used to sign requests (TWILIO_AUTH_TOKEN)")
    args = p.parse_args()

    print("\nType a message and hit Enter. Replies go out through the provider (dry-run logs them). Ctrl+C to quit.\n")
    while True:
        try:
            text = input(f"[{args.from_}] ").strip()
            if not text:
                continue
            params = {
                "From": args.from_,
                "To": args.to,
                "Body": text,
                "MessageSid": f"SMcli{uuid.uuid4().hex}",
            }
            try:
                body = post_form(args.base, "/sms/inbound", params, args.token, args.public_base)
            except requests.HTTPError as he:
                print(f"[server HTTP {he.response.status_code}] {he.response.text}")
                continue
            print(f"[server] {body}")
        except KeyboardInterrupt:
            print("\nBye!")
            break
        except requests.RequestException as e:
            print(f"[network error] {e}")
            time.sleep(0.5)
    return 0


if __name__ == "__main__":
    sys.exit(main())
