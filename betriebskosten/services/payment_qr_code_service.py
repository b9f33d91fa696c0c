from __future__ import annotations

import base64
import io
from decimal import Decimal

import qrcode
from qrcode.image.svg import SvgPathImage


# EPC069-12 erlaubt höchstens 999.999.999,99 EUR und 140 Zeichen Verwendungszweck.
EPC_MAX_AMOUNT = Decimal("999999999.99")
EPC_MAX_REMITTANCE = 140


class PaymentQrCodeService:
    """GiroCode (EPC-QR) für die Überweisung einer Nachzahlung."""

    @staticmethod
    def epc_payload(
        *,
        name: str,
        iban: str,
        amount: Decimal,
        remittance: str,
        bic: str = "",
    ) -> str:
        normalized_iban = "".join(str(iban or "").split()).upper()
        if not normalized_iban or not name:
            return ""
        if amount <= 0 or amount > EPC_MAX_AMOUNT:
            return ""
        lines = [
            "BCD",
            "002",
            "1",
            "SCT",
            "".join(str(bic or "").split()).upper(),
            str(name).strip()[:70],
            normalized_iban,
            f"EUR{amount:.2f}",
            "",
            "",
            str(remittance or "").strip()[:EPC_MAX_REMITTANCE],
        ]
        return "\n".join(lines)

    @classmethod
    def qr_data_uri(
        cls,
        *,
        name: str,
        iban: str,
        amount: Decimal,
        remittance: str,
        bic: str = "",
    ) -> str:
        payload = cls.epc_payload(name=name, iban=iban, amount=amount, remittance=remittance, bic=bic)
        if not payload:
            return ""
        return cls._build_svg_data_uri(payload)

    @staticmethod
    def _build_svg_data_uri(payload: str) -> str:
        qr = qrcode.QRCode(
            error_correction=qrcode.constants.ERROR_CORRECT_M,
            box_size=8,
            border=2,
        )
        qr.add_data(payload)
        qr.make(fit=True)
        image = qr.make_image(image_factory=SvgPathImage)
        buffer = io.BytesIO()
        image.save(buffer)
        encoded_svg = base64.b64encode(buffer.getvalue()).decode("ascii")
        return f"data:image/svg+xml;base64,{encoded_svg}"
