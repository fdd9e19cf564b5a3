#!/usr/bin/env python3
"""
Drive a try-on prediction through a running vault.
Opens a session with the given Replicate key, creates the prediction and polls
it the same way the browser client does. Ctrl+C cancels the prediction.

Usage: run_tryon_job.py <replicate_api_key> <owner/model> '<input json>'
"""

import asyncio
import json
import os
import sys

import httpx
from dotenv import load_dotenv

project_root = os.path.join(os.path.dirname(__file__), '..')
env_path = os.path.join(project_root, '.env')
if os.path.exists(env_path):
    load_dotenv(env_path)

VAULT_URL = os.environ.get("VAULT_URL", "http://localhost:5000")
POLL_INTERVAL = float(os.environ.get("POLL_INTERVAL_SECONDS", "2.5"))
MAX_ATTEMPTS = int(os.environ.get("POLL_MAX_ATTEMPTS", "120"))
TERMINAL = {"succeeded", "failed", "canceled"}


async def run_job(api_key: str, model: str, job_input: dict):
    async with httpx.AsyncClient(base_url=VAULT_URL, timeout=30.0) as client:
        response = await client.post("/api/auth/init", json={"apiKey": api_key})
        if response.status_code != 201:
            print(f"❌ Session init failed ({response.status_code}): {response.text}")
            return 1
        headers = {"X-Session-Token": response.json()["sessionToken"]}
        print("🔐 Session opened")

        response = await client.post("/api/replicate/predictions",
                                     json={"model": model, "input": job_input}, headers=headers)
        if response.status_code != 201:
            print(f"❌ Prediction create failed ({response.status_code}): {response.text}")
            return 1
        prediction = response.json()
        print(f"🚀 Prediction {prediction['id']} created: {prediction['status']}")

        try:
            for attempt in range(MAX_ATTEMPTS):
                if prediction["status"] in TERMINAL:
                    break
                await asyncio.sleep(POLL_INTERVAL)
                response = await client.get(f"/api/replicate/predictions/{prediction['id']}", headers=headers)
                if response.status_code == 429:
                    wait = float(response.headers.get("retry-after", POLL_INTERVAL))
                    print(f"⏳ Rate limited, waiting {wait}s")
                    await asyncio.sleep(wait)
                    continue
                response.raise_for_status()
                prediction = response.json()
                print(f"   attempt {attempt + 1}: {prediction['status']}")
            else:
                print("⌛ Polling timed out, the prediction may still finish")
                return 2
        except (KeyboardInterrupt, asyncio.CancelledError):
            await client.delete(f"/api/replicate/predictions/{prediction['id']}", headers=headers)
            print("🛑 Prediction cancelled")
            return 130
        finally:
            await client.post("/api/auth/logout", headers=headers)

        if prediction["status"] == "succeeded":
            print(f"✅ Output: {prediction.get('output')}")
            return 0
        print(f"❌ Prediction {prediction['status']}: {prediction.get('error')}")
        return 1


if __name__ == "__main__":
    if len(sys.argv) != 4:
        print(__doc__)
        sys.exit(64)
    sys.exit(asyncio.run(run_job(sys.argv[1], sys.argv[2], json.loads(sys.argv[3]))))
