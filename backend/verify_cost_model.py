from app.services.generation.pricing import MMA_COSTS, resolve_still_lane, still_cost_for_lane, video_cost


def main() -> None:
    cases = [
        ("plain 5s", {"duration": 5}, {}, 5),
        ("plain 10s", {"duration": 10}, {}, 10),
        ("ref video 7s", {"frame2_url": "https://cdn.example/ref.mp4", "frame2_duration_sec": 7}, {}, 10),
        ("ref video 32s", {"frame2_url": "https://cdn.example/ref.mp4", "frame2_duration_sec": 32}, {}, 30),
        ("ref audio 3s", {"frame2_duration_sec": 3}, {"audio_url": "https://cdn.example/a.mp3"}, 5),
        ("ref audio 58s", {"frame2_duration_sec": 58}, {"audio_url": "https://cdn.example/a.mp3"}, 60),
        ("ref audio 90s", {"frame2_duration_sec": 90}, {"audio_url": "https://cdn.example/a.mp3"}, 60),
    ]
    for name, inputs, assets, expected in cases:
        got = video_cost(inputs, assets)
        assert got == expected, (name, got, expected)

    assert still_cost_for_lane(resolve_still_lane({})) == MMA_COSTS["still_main"]
    assert still_cost_for_lane(resolve_still_lane({"createLane": "niche"})) == MMA_COSTS["still_niche"]

    print("OK")
    for name, inputs, assets, _ in cases:
        print(f"{name}: {video_cost(inputs, assets)} matcha")


if __name__ == "__main__":
    main()
