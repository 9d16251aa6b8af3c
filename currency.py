from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional, Union


@dataclass(frozen=True)
class Currency:
    code: str
    symbol: str
    name: str
    locale: str

    @property
    def requires_decimal(self) -> bool:
        return self.code not in ZERO_DECIMAL_CODES


ZERO_DECIMAL_CODES = frozenset(
    {"KRW", "JPY", "VND", "IDR", "CLP", "UGX", "PYG", "KMF", "MGA", "RWF", "XOF", "XAF", "XPF"}
)

SUPPORTED_CURRENCIES: tuple[Currency, ...] = (
    Currency("KRW", "₩", "South Korean won", "ko_KR"),
    Currency("JPY", "¥", "Japanese yen", "ja_JP"),
    Currency("CNY", "¥", "Chinese yuan", "zh_CN"),
    Currency("HKD", "HK$", "Hong Kong dollar", "zh_HK"),
    Currency("SGD", "S$", "Singapore dollar", "en_SG"),
    Currency("TWD", "NT$", "New Taiwan dollar", "zh_TW"),
    Currency("THB", "฿", "Thai baht", "th_TH"),
    Currency("VND", "₫", "Vietnamese dong", "vi_VN"),
    Currency("IDR", "Rp", "Indonesian rupiah", "id_ID"),
    Currency("INR", "₹", "Indian rupee", "en_IN"),
    Currency("EUR", "€", "Euro", "de_DE"),
    Currency("GBP", "£", "Pound sterling", "en_GB"),
    Currency("CHF", "CHF", "Swiss franc", "de_CH"),
    Currency("SEK", "kr", "Swedish krona", "sv_SE"),
    Currency("USD", "$", "US dollar", "en_US"),
    Currency("CAD", "C$", "Canadian dollar", "en_CA"),
    Currency("MXN", "Mex$", "Mexican peso", "es_MX"),
    Currency("BRL", "R$", "Brazilian real", "pt_BR"),
    Currency("AUD", "A$", "Australian dollar", "en_AU"),
    Currency("NZD", "NZ$", "New Zealand dollar", "en_NZ"),
    Currency("AED", "د.إ", "UAE dirham", "ar_AE"),
    Currency("TRY", "₺", "Turkish lira", "tr_TR"),
)

_BY_CODE = {currency.code: currency for currency in SUPPORTED_CURRENCIES}

LANGUAGE_CURRENCIES = {
    "ko": "KRW",
    "ja": "JPY",
    "zh-Hans": "CNY",
    "zh-Hant": "TWD",
    "en-US": "USD",
    "en-GB": "GBP",
}

DEFAULT_CURRENCY_CODE = "USD"


def find_currency(code: Optional[str]) -> Optional[Currency]:
    if not code:
        return None
    return _BY_CODE.get(code.strip().upper())


def currency_for_language(language: Optional[str]) -> Currency:
    code = LANGUAGE_CURRENCIES.get(language or "", DEFAULT_CURRENCY_CODE)
    return _BY_CODE[code]


def format_amount(amount: Union[int, Decimal, float], currency: Currency) -> str:
    """Thousands separated with ",", up to two decimals, symbol appended."""
    value = Decimal(str(amount)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    if value == value.to_integral_value():
        text = f"{value:,.0f}"
    else:
        text = f"{value:,.2f}".rstrip("0")
    return f"{text}{currency.symbol}"
