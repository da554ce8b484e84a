# comanda/receipts/errors.py
from __future__ import annotations
import errno
from typing import Optional


class PrintError(Exception):
    kind = "sink_error"
    user_message = "Erro ao imprimir"
    transient = False

    def __init__(self, detail: str = "", *, path: Optional[str] = None):
        super().__init__(detail or self.user_message)
        self.detail = detail
        self.path = path

    @property
    def message(self) -> str:
        if self.path:
            return f"{self.user_message} ({self.path})"
        return self.user_message


class DeviceNotFound(PrintError):
    kind = "device_not_found"
    user_message = "Impressora não encontrada"


class PermissionDenied(PrintError):
    kind = "permission_denied"
    user_message = "Sem permissão para acessar a impressora"


class DeviceBusy(PrintError):
    kind = "device_busy"
    user_message = "Impressora ocupada"
    transient = True


class PrintTimeout(PrintError):
    kind = "timeout"
    user_message = "Tempo esgotado ao imprimir"
    transient = True


class SinkWriteError(PrintError):
    kind = "sink_error"
    user_message = "Erro ao enviar dados para a impressora"


class LayoutRenderError(PrintError):
    # resta interno al renderer: mai propagato
    kind = "layout_error"
    user_message = "Erro no layout de impressão"


_ERRNO_MAP = {
    errno.ENODEV: DeviceNotFound,
    errno.ENOENT: DeviceNotFound,
    errno.ENXIO: DeviceNotFound,
    errno.EACCES: PermissionDenied,
    errno.EPERM: PermissionDenied,
    errno.EBUSY: DeviceBusy,
    errno.EAGAIN: DeviceBusy,
    errno.ETIMEDOUT: PrintTimeout,
}


def classify_os_error(exc: BaseException, path: Optional[str] = None) -> PrintError:
    if isinstance(exc, PrintError):
        return exc
    if isinstance(exc, TimeoutError):
        return PrintTimeout(str(exc) or "timeout", path=path)
    if isinstance(exc, OSError):
        cls = _ERRNO_MAP.get(exc.errno)
        if cls is not None:
            return cls(exc.strerror or str(exc), path=path)
    return SinkWriteError(repr(exc), path=path)
