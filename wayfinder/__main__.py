#!/usr/bin/env python3
"""
Wayfinder - Live turn-by-turn walking navigation

Usage:
    python -m wayfinder DEST_LAT DEST_LON [options]

Options:
    --record FILE     Record GPS trace to JSON file for debugging
    --playback FILE   Playback GPS trace from JSON file
    --speed FACTOR    Playback speed multiplier (default: 1.0)
    --log FILE        Log file path (default: wayfinder_TIMESTAMP.log)
    --api-key KEY     Google Maps API key (default: $GOOGLE_MAPS_API_KEY)
    --mute            Start with voice guidance off
    --map FILE        Write an HTML map of the session on exit
"""

import argparse
import sys
from datetime import datetime
from pathlib import Path

from .app import Wayfinder
from .gps import GPSRecorder, GPSPlayback
from .models import Location


def main():
    parser = argparse.ArgumentParser(
        description="Wayfinder - Live turn-by-turn walking navigation"
    )
    parser.add_argument("lat", type=float, help="Destination latitude")
    parser.add_argument("lon", type=float, help="Destination longitude")
    parser.add_argument("--record", metavar="FILE",
                        help="Record GPS trace to JSON file")
    parser.add_argument("--playback", metavar="FILE",
                        help="Playback GPS trace from JSON file")
    parser.add_argument("--speed", type=float, default=1.0,
                        help="Playback speed multiplier (default: 1.0)")
    parser.add_argument("--log", metavar="FILE",
                        help="Log file path (default: wayfinder_TIMESTAMP.log)")
    parser.add_argument("--api-key", metavar="KEY",
                        help="Google Maps API key (default: $GOOGLE_MAPS_API_KEY)")
    parser.add_argument("--mute", action="store_true",
                        help="Start with voice guidance off")
    parser.add_argument("--map", metavar="FILE",
                        help="Write an HTML map of the session on exit")

    args = parser.parse_args()

    if args.record and args.playback:
        parser.error("--record and --playback cannot be used together")
    if args.speed <= 0:
        parser.error("--speed must be positive")

    if args.playback and not Path(args.playback).exists():
        print(f"Playback file not found: {args.playback}")
        sys.exit(1)

    log_path = args.log
    if not log_path:
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        log_path = f"wayfinder_{timestamp}.log"

    try:
        wayfinder = Wayfinder(
            Location(args.lat, args.lon),
            log_path=log_path,
            api_key=args.api_key,
            voice_enabled=not args.mute,
            map_output=args.map,
        )
    except ValueError as e:
        print(e)
        sys.exit(1)

    if args.playback:
        wayfinder.set_gps_source(GPSPlayback(args.playback, args.speed))
    elif args.record:
        wayfinder.set_gps_source(GPSRecorder(wayfinder.gps_source, args.record))

    wayfinder.run()


if __name__ == "__main__":
    main()
