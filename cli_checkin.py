"""
Check-in desk for staff without a camera: paste (or scan with a keyboard
wedge scanner) the QR token, one per line.
"""
import os

import requests

portal_url = os.getenv("PORTAL_URL", "http://localhost:8000")
api_key = os.getenv("PORTAL_API_KEY", "")

while True:
    token = input("QR token: ").strip()
    if token.lower() in ["quit", "exit"]:
        break
    if not token:
        continue

    try:
        resp = requests.post(
            f"{portal_url}/checkin",
            json={"qrToken": token},
            headers={"X-API-KEY": api_key},
            timeout=10,
        )
    except requests.RequestException as e:
        print("Network error:", e)
        continue

    body = resp.json()
    if resp.status_code != 200:
        print(f"Check-in failed ({resp.status_code}):", body.get("detail"))
        continue

    registration = body.get("registration") or {}
    who = registration.get("name") or "visitor"
    if body.get("alreadyAttended"):
        print(f"Already checked in: {who}, at {body.get('attendedAt')}")
    else:
        print(f"Checked in: {who}, at {body.get('attendedAt')}")
