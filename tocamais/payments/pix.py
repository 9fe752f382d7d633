"""Codec do BR Code PIX (EMV/TLV) com checksum CRC16-CCITT."""

import re
import unicodedata
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Optional, Union

from tocamais.payments.errors import ValidationError

PIX_GUI = "br.gov.bcb.pix"
CRC_PLACEHOLDER = "6304"
DEFAULT_TRANSACTION_ID = "***"
MAX_NAME_LENGTH = 25
MAX_CITY_LENGTH = 15
MAX_TRANSACTION_ID_LENGTH = 25
_CENTS = Decimal("0.01")


class PixKeyType(str, Enum):
    CPF = "cpf"
    CNPJ = "cnpj"
    CELULAR = "celular"
    EMAIL = "email"
    ALEATORIA = "aleatoria"


@dataclass(frozen=True)
class PixFields:
    """Dados de uma cobrança PIX estática (sem valor) ou dinâmica (com valor)."""

    key: str
    key_type: Union[PixKeyType, str]
    merchant_name: str
    merchant_city: str
    amount: Optional[Union[Decimal, int, float, str]] = None
    transaction_id: str = DEFAULT_TRANSACTION_ID


def crc16_ccitt(data: str) -> str:
    """CRC16-CCITT (polinômio 0x1021, valor inicial 0xFFFF) em 4 dígitos hex maiúsculos."""
    crc = 0xFFFF
    for byte in data.encode("utf-8"):
        crc ^= byte << 8
        for _ in range(8):
            if crc & 0x8000:
                crc = ((crc << 1) ^ 0x1021) & 0xFFFF
            else:
                crc = (crc << 1) & 0xFFFF
    return f"{crc:04X}"


def _field(tag: str, value: str) -> str:
    if len(value) > 99:
        raise ValidationError(
            f"Campo {tag} excede 99 caracteres",
            {"tag": tag, "length": len(value)},
        )
    return f"{tag}{len(value):02d}{value}"


_TRANSLITERATION = str.maketrans(
    {
        "ß": "ss",
        "Æ": "AE",
        "æ": "ae",
        "Ø": "O",
        "ø": "o",
        "Œ": "OE",
        "œ": "oe",
        "Đ": "D",
        "đ": "d",
        "Ł": "L",
        "ł": "l",
    }
)


def _strip_accents(text: str, limit: int) -> str:
    """Só ASCII imprimível: o tamanho do TLV conta caracteres e o CRC conta bytes."""
    decomposed = unicodedata.normalize("NFD", text.strip().translate(_TRANSLITERATION))
    plain = "".join(c for c in decomposed if " " <= c <= "~")
    return plain[:limit].upper()


def normalize_pix_key(key: str, key_type: Union[PixKeyType, str]) -> str:
    """Normaliza a chave conforme o tipo (CPF/CNPJ só dígitos, celular em E.164, email minúsculo)."""
    try:
        kind = PixKeyType(key_type)
    except ValueError:
        raise ValidationError("Tipo de chave PIX inválido", {"key_type": str(key_type)})
    clean = (key or "").strip()
    if kind in (PixKeyType.CPF, PixKeyType.CNPJ):
        clean = re.sub(r"\D", "", clean)
    elif kind == PixKeyType.CELULAR:
        clean = re.sub(r"\D", "", clean)
        # DDD + número (10 ou 11 dígitos) ainda sem código do país
        if len(clean) in (10, 11):
            clean = "55" + clean
        clean = "+" + clean if clean else ""
    elif kind == PixKeyType.EMAIL:
        clean = clean.lower()
    if not clean:
        raise ValidationError("Chave PIX vazia", {"key_type": kind.value})
    return clean


def format_amount(amount: Union[Decimal, int, float, str]) -> str:
    value = Decimal(str(amount)).quantize(_CENTS, rounding=ROUND_HALF_UP)
    return f"{value:.2f}"


def encode_pix_payload(fields: PixFields) -> str:
    """Monta o payload BR Code (copia-e-cola) na ordem fixa de campos EMV."""
    key = normalize_pix_key(fields.key, fields.key_type)
    transaction_id = (fields.transaction_id or DEFAULT_TRANSACTION_ID).strip()
    if len(transaction_id) > MAX_TRANSACTION_ID_LENGTH:
        raise ValidationError(
            "txid excede 25 caracteres", {"transaction_id": transaction_id}
        )
    amount = None
    if fields.amount is not None and Decimal(str(fields.amount)) > 0:
        amount = format_amount(fields.amount)

    merchant_account = _field("00", PIX_GUI) + _field("01", key)
    payload = _field("00", "01")
    payload += _field("01", "12" if amount else "11")
    payload += _field("26", merchant_account)
    payload += _field("52", "0000")
    payload += _field("53", "986")
    if amount:
        payload += _field("54", amount)
    payload += _field("58", "BR")
    payload += _field("59", _strip_accents(fields.merchant_name, MAX_NAME_LENGTH))
    payload += _field("60", _strip_accents(fields.merchant_city, MAX_CITY_LENGTH))
    payload += _field("62", _field("05", transaction_id))
    payload += CRC_PLACEHOLDER
    return payload + crc16_ccitt(payload)


def parse_tlv(payload: str) -> dict[str, str]:
    """Decodifica um nível de TLV em {tag: valor}. Não desce em sub-templates."""
    fields: dict[str, str] = {}
    pos = 0
    while pos < len(payload):
        if pos + 4 > len(payload):
            raise ValueError(f"TLV truncado na posição {pos}")
        tag = payload[pos:pos + 2]
        length = int(payload[pos + 2:pos + 4])
        value = payload[pos + 4:pos + 4 + length]
        if len(value) != length:
            raise ValueError(f"Campo {tag} com tamanho inconsistente")
        fields[tag] = value
        pos += 4 + length
    return fields


def verify_pix_payload(payload: str) -> bool:
    """Recalcula o CRC do payload e compara com os 4 dígitos finais."""
    if len(payload) < 8 or payload[-8:-4] != CRC_PLACEHOLDER:
        return False
    return crc16_ccitt(payload[:-4]) == payload[-4:].upper()
