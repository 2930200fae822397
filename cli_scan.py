import os
import requests

base_url = os.getenv("CHECKIN_URL", "http://localhost:8000")
api_key = os.getenv("API_KEY", "")
leader_id = input("Leader id: ").strip() or "cli-leader-001"
event_id = input("Event id: ").strip()

headers = {"X-Leader-Id": leader_id}
if api_key:
    headers["X-API-KEY"] = api_key

while True:
    qr_code = input("QR code (or 'exit'): ")
    if qr_code.lower() in ["exit", "quit"]:
        break

    activity_id = input("Activity id (empty = return to camp): ").strip()
    payload = {"qr_code": qr_code}
    if activity_id:
        payload.update({"scan_type": "departure", "activity_id": activity_id})
    else:
        payload["scan_type"] = "return"

    resp = requests.post(f"{base_url}/events/{event_id}/scans", json=payload, headers=headers)

    if resp.ok:
        print("->", resp.json()["message"])
    else:
        print(f"-> error {resp.status_code}:", resp.json().get("detail"))
