import pandas as pd
import numpy as np

def generate_mock_providers(num_providers=200, output_file="mock_providers.csv", seed=None):
    """
    Scatters roadside providers around a city center for search simulations.
    Most providers sit within ~15km of the center, a tail is spread much further
    out so the outer radius steps (50km, 100km) get exercised too.
    """
    rng = np.random.default_rng(seed)

    # Center around Sao Paulo
    CENTER_LAT = -23.55
    CENTER_LNG = -46.63

    services = ["tow", "tire_service", "mechanic", "locksmith"]

    data = []
    for provider_index in range(num_providers):
        # 85% urban (~0.15 degrees), 15% regional (~0.8 degrees)
        spread = 0.15 if rng.random() < 0.85 else 0.8
        lat = CENTER_LAT + rng.uniform(-spread, spread)
        lng = CENTER_LNG + rng.uniform(-spread, spread)

        # Each provider offers 1-3 services
        offered = rng.choice(services, size=rng.integers(1, 4), replace=False)

        data.append({
            "provider_id": f"PRV-{str(provider_index+1).zfill(4)}",
            "lat": np.round(lat, 6),
            "lng": np.round(lng, 6),
            "services_offered": "|".join(sorted(offered)),
            "is_online": bool(rng.random() < 0.8),
            "radar_range_km": int(rng.choice([10, 15, 25, 50])),
            "is_blocked": bool(rng.random() < 0.03),
        })

    df = pd.DataFrame(data)
    df.to_csv(output_file, index=False)

    print(f"Successfully generated {len(df)} mock providers into '{output_file}'.")
    print(f"Online: {df['is_online'].sum()}  Blocked: {df['is_blocked'].sum()}")
    return df

if __name__ == "__main__":
    generate_mock_providers()
