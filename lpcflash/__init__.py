"""
LPC11C2x CAN flash tool: Intel HEX loading, CANopen SDO client and the boot
ROM programming sequence, with python-can and network CAN transports.
"""

__version__ = "1.0.0"
