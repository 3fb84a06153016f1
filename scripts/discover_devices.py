#!/usr/bin/env python3
"""
Discover Awair sensors on the local network

Runs one discovery pass (mDNS browse + identity lookup) and prints what
answered. Nothing is written to the database.

Usage:
    python3 scripts/discover_devices.py [--timeout SECONDS]
"""

import sys
import os
import argparse
import logging

# Add repository root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from air_monitor.awair.client import AwairClient, Resolved
from air_monitor.awair.discovery import DISCOVERY_TIMEOUT, DeviceDiscovery


def main():
    parser = argparse.ArgumentParser(description='Discover Awair sensors via mDNS')
    parser.add_argument('--timeout', type=float, default=DISCOVERY_TIMEOUT, help='browse time in seconds')
    parser.add_argument('-v', '--verbose', action='store_true')
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    print("=" * 60)
    print("Awair Device Discovery")
    print("=" * 60)
    print()
    print(f"Browsing _http._tcp.local. for {args.timeout:.0f} seconds...")
    print()

    client = AwairClient()
    discovery = DeviceDiscovery(client, on_discovered=lambda device: None, browse_timeout=args.timeout)

    try:
        devices = discovery.run_pass()
    except KeyboardInterrupt:
        print("\nInterrupted")
        sys.exit(1)
    finally:
        client.close()

    if not devices:
        print("✗ No Awair devices answered!")
        print()
        print("Troubleshooting:")
        print("  1. Enable the Local API in the Awair Home app")
        print("     (Device Settings > Developer Option > Local API)")
        print("  2. Check that multicast is allowed on this network:")
        print("     avahi-browse -r _http._tcp")
        print("  3. Make sure this machine and the sensor share a subnet")
        sys.exit(1)

    print(f"✓ Found {len(devices)} device(s):")
    for device in devices:
        print()
        print(f"  Hostname: {device.hostname}")
        print(f"  Address:  {device.address}")
        if isinstance(device.identity, Resolved):
            print(f"  Serial:   {device.identity.serial}")
            print(f"  Kind:     {device.identity.kind}")
            print(f"  Firmware: {device.identity.firmware}")
        if device.reading:
            r = device.reading
            print(f"  Reading:  score={r.score:.0f} temp={r.temperature:.1f}°C "
                  f"humidity={r.humidity:.1f}% co2={r.co2:.0f}ppm voc={r.voc:.0f}ppb pm25={r.pm25:.0f}")


if __name__ == "__main__":
    main()
