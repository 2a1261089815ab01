"""Observatory — unified device synchronisation for ASCOM Alpaca instruments.

Quickstart::

    from observatory.hub import DeviceHub

    async with DeviceHub() as hub:
        await hub.discover()
        for device in hub.list_devices():
            print(device.id, device.connection_state.value)
"""

__version__ = "0.1.0"
