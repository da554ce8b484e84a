import asyncio

from comanda.config import PrinterConfig
from comanda.receipts.devices import (
    DeviceLocator,
    INACTIVE,
    ONLINE,
    PrinterDescriptor,
    SIMULATION,
    Transport,
    dedupe,
    identity_key,
    parse_lpstat,
    parse_lsusb,
    parse_wmic,
)

LSUSB = """\
Bus 001 Device 001: ID 1d6b:0002 Linux Foundation 2.0 root hub
Bus 001 Device 004: ID 0519:2013 Star Micronics Co., Ltd. POS Printer
Bus 001 Device 005: ID 046d:c52b Logitech, Inc. Unifying Receiver
Bus 002 Device 003: ID 04b8:0202 Seiko Epson Corp. Receipt Printer M129C/TM-T70
"""

LPSTAT = """\
printer EPSON_TM_T20 is idle.  enabled since Fri 10 May 2024 10:00:00
printer Cozinha disabled since Fri 10 May 2024 09:00:00 -
\treason unknown
system default destination: EPSON_TM_T20
"""


class FakeRunner:
    def __init__(self, outputs=None, fail=()):
        self.outputs = outputs or {}
        self.fail = set(fail)
        self.calls = []

    async def __call__(self, argv):
        self.calls.append(list(argv))
        if argv[0] in self.fail:
            raise FileNotFoundError(argv[0])
        return self.outputs.get(argv[0], "")


def _config(tmp_path, **kw):
    data = dict(
        fallback_device_paths=[],
        device_globs=[str(tmp_path / "lp*")],
        ensure_device_nodes=False,
    )
    data.update(kw)
    return PrinterConfig(**data)


def test_parse_lsusb_keeps_only_printers():
    printers = parse_lsusb(LSUSB)
    assert [p.id for p in printers] == ["0519:2013", "04b8:0202"]
    star, epson = printers
    assert star.manufacturer == "Thermal POS"
    assert epson.transport == Transport("usb", vendor_id=0x04B8, product_id=0x0202)
    assert epson.status == ONLINE


def test_parse_lpstat_status_and_default():
    idle, disabled = parse_lpstat(LPSTAT)
    assert idle.display_name == "EPSON_TM_T20"
    assert idle.status == ONLINE and idle.is_default
    assert disabled.status == INACTIVE and disabled.can_activate
    assert disabled.id == "cozinha"


def test_parse_wmic_csv():
    out = "Node,Default,Name,Status\r\nPDV,TRUE,POS-80,OK\r\nPDV,FALSE,Microsoft Print to PDF,Unknown\r\n"
    printers = parse_wmic(out)
    assert [p.display_name for p in printers] == ["POS-80", "Microsoft Print to PDF"]
    assert printers[0].is_default and printers[0].status == ONLINE
    assert printers[1].status != ONLINE


def test_identity_key_normalizes_names():
    assert identity_key("  POS 80  Printer ") == "pos80printer"
    assert identity_key("whatever", 0x0519, 0x1) == "0519:0001"


def test_dedupe_first_occurrence_wins():
    a = PrinterDescriptor(id="x", display_name="primo")
    b = PrinterDescriptor(id="x", display_name="secondo")
    c = PrinterDescriptor(id="y", display_name="terzo")
    assert [p.display_name for p in dedupe([a, b, c])] == ["primo", "terzo"]


def test_discover_runs_all_strategies(tmp_path):
    (tmp_path / "lp0").write_bytes(b"")
    runner = FakeRunner({"lpstat": LPSTAT, "lsusb": LSUSB})
    locator = DeviceLocator(_config(tmp_path), runner=runner, platform="linux")

    printers = asyncio.run(locator.discover())

    sources = [p.source for p in printers]
    assert sources == ["cups", "cups", "usb", "usb", "device"]
    assert printers[-1].transport.device_path == str(tmp_path / "lp0")
    assert locator.find("04b8:0202").display_name.startswith("Seiko Epson")


def test_discover_swallows_strategy_failures(tmp_path):
    runner = FakeRunner({"lsusb": LSUSB}, fail={"lpstat"})
    locator = DeviceLocator(_config(tmp_path), runner=runner, platform="linux")
    printers = asyncio.run(locator.discover())
    assert [p.source for p in printers] == ["usb", "usb"]


def test_discover_without_hardware_returns_empty_list(tmp_path):
    runner = FakeRunner(fail={"lpstat", "lsusb"})
    locator = DeviceLocator(_config(tmp_path), runner=runner, platform="linux")
    assert asyncio.run(locator.discover()) == []


def test_ensure_device_nodes_degrades_silently(tmp_path):
    runner = FakeRunner({"lsusb": LSUSB}, fail={"sudo", "lpstat"})
    locator = DeviceLocator(_config(tmp_path, ensure_device_nodes=True), runner=runner, platform="linux")
    printers = asyncio.run(locator.discover())
    assert len(printers) == 2
    assert all(p.source != "mknod" for p in printers)


def test_transport_chain_priority(tmp_path):
    requested = tmp_path / "requested"
    fallback = tmp_path / "fallback"
    missing = tmp_path / "missing"
    requested.write_bytes(b"")
    fallback.write_bytes(b"")
    cfg = _config(tmp_path, fallback_device_paths=[str(missing), str(fallback)])
    locator = DeviceLocator(cfg, runner=FakeRunner(), platform="linux")

    chain = locator.transport_chain(requested_path=str(requested))
    assert chain == [
        Transport("device", device_path=str(requested)),
        Transport("device", device_path=str(fallback)),
        SIMULATION,
    ]


def test_transport_chain_appends_usb_before_simulation(tmp_path):
    locator = DeviceLocator(_config(tmp_path), runner=FakeRunner(), platform="linux")
    usb = Transport("usb", vendor_id=0x0519, product_id=0x2013)
    printer = PrinterDescriptor(id="0519:2013", display_name="POS", transport=usb)
    assert locator.transport_chain(printer) == [usb, SIMULATION]


def test_resolve_falls_back_to_simulation(tmp_path):
    locator = DeviceLocator(_config(tmp_path), runner=FakeRunner(), platform="linux")
    transport = locator.resolve_transport(requested_path=str(tmp_path / "nope"))
    assert transport.simulated


def test_check_status_reports_simulation(tmp_path):
    runner = FakeRunner({"lpstat": LPSTAT})
    locator = DeviceLocator(_config(tmp_path), runner=runner, platform="linux")
    st = asyncio.run(locator.check_status())
    assert st["connected"] is True
    assert st["model"] == "EPSON_TM_T20"
    assert st["count"] == 2
    assert st["platform"] == "linux"
    assert st["simulated"] is True


def test_activate_inactive_cups_queue(tmp_path):
    runner = FakeRunner({"lpstat": LPSTAT})
    locator = DeviceLocator(_config(tmp_path), runner=runner, platform="linux")
    asyncio.run(locator.discover())

    assert asyncio.run(locator.activate("cozinha")) is True
    assert ["cupsenable", "Cozinha"] in runner.calls
    assert locator.find("cozinha").status == ONLINE
    assert asyncio.run(locator.activate("epson_tm_t20")) is False
