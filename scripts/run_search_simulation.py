import os
import random
from typing import List

import numpy as np
import pandas as pd

from dispatch.change_feed import ProviderChangeFeed
from dispatch.dispatcher import Dispatcher
from dispatch.scheduling import ManualScheduler
from providers.models import Provider
from providers.policy import SearchPolicy
from store.memory import InMemoryDispatchStore

class RecordingPushService:
    """
    Stands in for the push gateway: remembers every offer so the simulation
    can decide who answers.
    """
    def __init__(self):
        self.offers = {}
        self.events = []

    def notify(self, user_id, request_id, payload):
        self.events.append((user_id, request_id, payload.TYPE))
        if payload.TYPE == "request_offer":
            self.offers.setdefault(request_id, []).append(user_id)
        return True

    def revoke_offer(self, provider_ids, request_id, reason="taken"):
        for provider_id in provider_ids:
            self.events.append((provider_id, request_id, f"offer_revoked:{reason}"))
        return len(provider_ids)

def load_providers(filepath="mock_providers.csv", now=None) -> List[Provider]:
    base_dir = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
    absolute_path = os.path.join(base_dir, filepath)

    if not os.path.exists(absolute_path):
        from scripts.generate_mock_providers import generate_mock_providers
        generate_mock_providers(output_file=absolute_path, seed=7)

    df = pd.read_csv(absolute_path)
    providers = []
    for row in df.itertuples(index=False):
        providers.append(
            Provider.new(
                row.provider_id,
                float(row.lat),
                float(row.lng),
                services=row.services_offered.split("|"),
                is_online=bool(row.is_online),
                last_heartbeat_at=now,
                radar_range_km=float(row.radar_range_km),
                is_blocked=bool(row.is_blocked),
            )
        )
    return providers

def random_origin(rng):
    # Requests cluster closer to the center than providers do
    return {
        "lat": -23.55 + rng.normal(0, 0.05),
        "lng": -46.63 + rng.normal(0, 0.05),
        "address": f"Av. Simulada, {rng.integers(1, 3000)}",
    }

def run_simulation(num_requests=25, decline_probability=0.4, seed=11):
    print("=== STARTING PROXIMITY SEARCH SIMULATION ===")
    rng = np.random.default_rng(seed)
    random.seed(seed)

    # 1. Configure System (virtual clock: the whole ladder runs in milliseconds)
    scheduler = ManualScheduler()
    feed = ProviderChangeFeed()
    store = InMemoryDispatchStore(feed=feed)
    push = RecordingPushService()
    # heartbeats are loaded once, so keep them fresh for the whole run
    policy = SearchPolicy(heartbeat_timeout_seconds=24 * 3600)
    dispatcher = Dispatcher(store, scheduler=scheduler, push_service=push, policy=policy)

    # 2. Load Data
    providers = load_providers(now=scheduler.now())
    for provider in providers:
        store.save_provider(provider)
    print(f"Loaded {len(providers)} providers.\n")

    # 3. Submit requests and let providers answer
    results = []
    for index in range(num_requests):
        service_type = random.choice(["tow", "tire_service", "mechanic", "locksmith"])
        data = {"service_type": service_type, "origin": random_origin(rng)}
        if service_type == "tow":
            data["destination"] = random_origin(rng)

        request = dispatcher.submit_request(f"CLI-{index+1:03d}", data)
        started = scheduler.now()
        declines = 0
        winner = None

        # walk the virtual clock second by second until someone accepts or the search ends
        for _ in range(120):
            session = dispatcher.session_for(request.id)
            if session is None or not session.is_active:
                break

            offered = push.offers.pop(request.id, [])
            for provider_id in offered:
                if random.random() < decline_probability:
                    dispatcher.decline_request(request.id, provider_id)
                    declines += 1
                elif dispatcher.resolve_provider_acceptance(request.id, provider_id):
                    winner = provider_id
                    break
            if winner:
                break
            scheduler.advance(1)

        session = dispatcher.session_for(request.id)
        final = store.get_request(request.id)
        results.append({
            "request_id": request.id,
            "service_type": service_type,
            "assigned_provider": winner or "NONE",
            "radius_km": session.radius_km if session else None,
            "search_state": session.state.value if session else "assigned",
            "declines": declines,
            "seconds_to_assign": (scheduler.now() - started).total_seconds() if winner else None,
            "status": final.status.value,
        })
        if winner:
            print(f"[SUCCESS] Request {request.id[:8]} ({service_type}) -> {winner} after {declines} declines")
        else:
            print(f"[FAILED] Request {request.id[:8]} ({service_type}) -> nobody accepted")

        # free the provider for the next requests
        if winner:
            dispatcher.provider_cancel(request.id, winner)
            dispatcher.client_cancel(request.id, final.client_id, "simulation_done")

    dispatcher.shutdown()

    # 4. Report
    df = pd.DataFrame(results)
    base_dir = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
    output_path = os.path.join(base_dir, "search_results.csv")
    df.to_csv(output_path, index=False)

    assigned = df[df["assigned_provider"] != "NONE"]
    print("\n=== SIMULATION COMPLETE ===")
    print(f"Requests Assigned: {len(assigned)} / {len(df)}")
    if not assigned.empty:
        print(f"Mean seconds to assign: {assigned['seconds_to_assign'].mean():.1f}")
    print(f"Push events sent: {len(push.events)}")
    print(f"Results written to '{output_path}'.")

if __name__ == "__main__":
    run_simulation()
