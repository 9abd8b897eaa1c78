#!/usr/bin/env python3
"""
LPC11C2x CAN Boot ROM Flash Script
==================================
Flash Intel HEX firmware into NXP LPC11C22/LPC11C24 microcontrollers through
the built-in CANopen boot ROM.

Usage:
    python Flash_Application.py firmware.hex --channel /dev/ttyACM0
    python Flash_Application.py firmware.hex --interface gs_usb --channel 0 --go reset
    python Flash_Application.py firmware.hex --network 192.168.1.20:8080 --go address --address 0x0

Requirements:
    - python-can library (slcan needs pyserial)
    - USBtin, CANable or any other python-can adapter, or a network CAN server
"""

import argparse
import dataclasses
import sys
from pathlib import Path

from lpcflash import __version__
from lpcflash import Hex_Parser
from lpcflash.Flash_Errors import FlashError
from lpcflash.LPC_Flasher import DEVICE_PROFILES, GoMode, LPCFlasher
from lpcflash.Message_Sink import ConsoleSink
from lpcflash.NetworkCAN_Driver import NetworkCANDriver
from lpcflash.PythonCAN_Driver import DEFAULT_INTERFACE, PythonCANDriver


def parse_int(text: str) -> int:
    """Accept decimal or 0x-prefixed hex numbers"""
    try:
        return int(text, 0)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid number: {text}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='Flash firmware to LPC11C2x via the CAN boot ROM',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog='''
Examples:
  # USBtin / slcan adapter (default)
  python Flash_Application.py firmware.hex --channel /dev/ttyACM0
  python Flash_Application.py firmware.hex --channel COM3 --go reset

  # CANable with candleLight firmware
  python Flash_Application.py firmware.hex --interface gs_usb --channel 0

  # Remote CAN server
  python Flash_Application.py firmware.hex --network 192.168.1.20:8080

  # Device information and memory dump
  python Flash_Application.py --info --channel /dev/ttyACM0
  python Flash_Application.py --read-memory 0x0 0x8000 dump.hex --channel /dev/ttyACM0
        '''
    )

    parser.add_argument('firmware', type=str, nargs='?',
                        help='Path to firmware .hex file')
    parser.add_argument('--interface', type=str, default=DEFAULT_INTERFACE,
                        help=f'python-can interface (default: {DEFAULT_INTERFACE})')
    parser.add_argument('--channel', type=str, default=None,
                        help='Adapter channel: serial port, device index or interface name')
    parser.add_argument('--network', type=str, default=None, metavar='HOST[:PORT]',
                        help='Use a remote CAN server instead of a local adapter')
    parser.add_argument('--device', type=str, default='lpc11c24',
                        choices=sorted(DEVICE_PROFILES),
                        help='Target device (default: lpc11c24)')
    parser.add_argument('--go', type=str, default=GoMode.NO.value,
                        choices=[mode.value for mode in GoMode],
                        help='After flashing: stay in boot ROM (no), jump to --address, '
                             'or run an injected reset routine (reset)')
    parser.add_argument('--address', type=parse_int, default=None,
                        help='Execution address for --go address')
    parser.add_argument('--bitrate', type=parse_int, default=None,
                        help='CAN bit rate (default: 100000)')
    parser.add_argument('--timeout', type=float, default=None,
                        help='SDO response timeout in seconds (default: 1.0)')
    parser.add_argument('--info', action='store_true',
                        help='Read device type, part ID, boot ROM version and serial number')
    parser.add_argument('--read-memory', nargs=3, metavar=('ADDRESS', 'LENGTH', 'OUTPUT'),
                        help='Read target memory into a .hex or .bin file')
    parser.add_argument('--list-devices', action='store_true',
                        help='List channels available for --interface and exit')
    parser.add_argument('--verbose', action='store_true',
                        help='Print every CAN frame')
    return parser


def build_transport(args):
    if args.network:
        return NetworkCANDriver(verbose=args.verbose), args.network
    return PythonCANDriver(interface=args.interface, verbose=args.verbose), args.channel


def write_dump(path: Path, address: int, data: bytes):
    if path.suffix.lower() in ('.hex', '.ihx'):
        path.write_text('\n'.join(Hex_Parser.write_records(data, base_address=address)) + '\n', encoding='ascii')
    else:
        path.write_bytes(data)


def main(argv=None) -> int:
    """Main entry point for the script."""
    parser = build_parser()
    args = parser.parse_args(argv)

    print("\n" + "=" * 60)
    print("LPC11C2x CAN Boot ROM Flash Tool")
    print("=" * 60)
    print(f"Version: {__version__}")
    print("=" * 60 + "\n")

    if args.list_devices:
        try:
            devices = PythonCANDriver.list_devices(args.interface)
        except FlashError as e:
            print(f"✗ {e}")
            return 1
        if not devices:
            print(f"✗ No {args.interface} devices found")
            return 1
        print(f"Found {len(devices)} device(s):\n")
        for dev in devices:
            print(f"  {dev.get('channel')}")
        return 0

    if not (args.firmware or args.info or args.read_memory):
        parser.print_help()
        return 1

    go_mode = GoMode(args.go)
    if go_mode == GoMode.ADDRESS and args.address is None:
        parser.error("--go address requires --address")

    profile = DEVICE_PROFILES[args.device]
    overrides = {}
    if args.bitrate is not None:
        overrides['bitrate'] = args.bitrate
    if args.timeout is not None:
        overrides['timeout'] = args.timeout
    if overrides:
        profile = dataclasses.replace(profile, **overrides)

    transport, channel = build_transport(args)
    if not channel:
        print("✗ Error: no adapter given (use --channel or --network)")
        return 1

    sink = ConsoleSink()
    flasher = LPCFlasher(transport, sink=sink, profile=profile, verbose=args.verbose)

    try:
        if args.info:
            info = flasher.read_device_info(channel)
            print(f"Device type:      {info.device_type}")
            print(f"Part ID:          0x{info.part_id:08X}")
            print(f"Boot ROM version: 0x{info.bootloader_version:08X}")
            print(f"Serial number:    {info.serial_number.hex().upper()}")
            if not (args.firmware or args.read_memory):
                return 0

        if args.read_memory:
            address = parse_int(args.read_memory[0])
            length = parse_int(args.read_memory[1])
            output = Path(args.read_memory[2])
            data = flasher.read_memory(channel, address, length)
            write_dump(output, address, data)
            print(f"✓ Saved {len(data)} bytes to {output}")
            if not args.firmware:
                return 0

    except (FlashError, ValueError, argparse.ArgumentTypeError) as e:
        print(f"✗ Error: {e}")
        return 1

    firmware_path = Path(args.firmware)
    if not firmware_path.exists():
        print(f"✗ Error: Firmware file not found: {firmware_path}")
        return 1

    print(f"Firmware file: {firmware_path}")
    print(f"Target:        {profile.name}")
    print(f"Adapter:       {'network ' + channel if args.network else f'{args.interface} {channel}'}")
    print(f"After flash:   {go_mode.value}\n")

    try:
        success = flasher.flash(channel, firmware_path, go_mode,
                                args.address if args.address is not None else 0)
    except KeyboardInterrupt:
        print("\n\n✗ Interrupted by user")
        return 1

    if success:
        print("\n" + "=" * 60)
        print("✓ FLASHING COMPLETED SUCCESSFULLY!")
        print("=" * 60 + "\n")
        return 0

    print("\n" + "=" * 60)
    print(f"✗ FLASHING FAILED ({type(flasher.last_error).__name__})")
    print("=" * 60 + "\n")
    return 1


if __name__ == '__main__':
    sys.exit(main())
