"""Configuration settings for Wayfinder."""

CONFIG = {
    "update_interval": 2.0,  # seconds - at most one pipeline pass per interval
    "log_interval": 10,  # seconds between STATE log entries
    "voice_enabled": True,
    # Noise rejection
    "low_accuracy_threshold": 50,  # meters - coarser fixes are dropped once a fix exists
    "teleport_distance": 80,  # meters
    "teleport_speed": 4,  # m/s - jumps faster than this (and further than teleport_distance) are dropped
    "heading_min_displacement": 0.5,  # meters - below this, keep the previous heading
    # Step advancement
    "step_arrival_radius": 10,  # meters to the end of the current step
    "step_heading_threshold": 45,  # degrees between heading and step bearing
    "turn_announce_distance": 20,  # meters - pre-announce the next instruction inside this
    "turn_vibration_pattern": [150, 80, 150],  # ms on/off/on
    # Speed
    "walking_speed": 1.4,  # m/s - fallback when measured velocity is too low
    "min_measured_speed": 0.2,  # m/s
    "dead_reckoning_horizon": 2.0,  # seconds of extrapolation at most
    # Off-route hysteresis
    "off_route_threshold": 30,  # meters from the route polyline
    "off_route_consecutive_limit": 3,  # samples
    "min_reroute_interval": 5.0,  # seconds between reroute requests
    # Per-axis filter noise (squared degrees)
    "kalman": {
        "lat": {"process_noise": 1e-5, "measurement_noise": 1e-3, "initial_error": 1.0},
        "lon": {"process_noise": 1e-5, "measurement_noise": 1e-3, "initial_error": 1.0},
    },
    # Route provider
    "directions_url": "https://maps.googleapis.com/maps/api/directions/json",
    "directions_timeout": 15,  # seconds
}
