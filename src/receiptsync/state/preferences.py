"""Theme/locale and currency preferences backed by the local store."""

import logging

from pydantic import BaseModel, ConfigDict

from receiptsync import currency as currency_utils
from receiptsync.errors import CacheError, DataValidationError
from receiptsync.integrations.exchange_rates import ExchangeRateService
from receiptsync.local_store import LocalStore
from receiptsync.models import ExchangeRateEntry, ThemeMode
from receiptsync.state.base import StateContainer

logger = logging.getLogger(__name__)

THEME_KEY = "theme"
LOCALE_KEY = "locale"
CURRENCY_KEY = "currency"
SUPPORTED_LOCALES = ("en", "ms")


class ThemePreferences(BaseModel):
    model_config = ConfigDict(frozen=True)

    mode: ThemeMode = ThemeMode.SYSTEM
    locale: str = "en"


class ThemeContainer(StateContainer[ThemePreferences]):
    name = "theme"

    def __init__(self, store: LocalStore) -> None:
        super().__init__(ThemePreferences())
        self.store = store

    async def _read(self) -> ThemePreferences:
        raw_mode = self.store.get(THEME_KEY, ThemeMode.SYSTEM.value)
        try:
            mode = ThemeMode(raw_mode)
        except ValueError:
            logger.warning("[theme] unknown stored theme %r, using system", raw_mode)
            mode = ThemeMode.SYSTEM
        return ThemePreferences(mode=mode, locale=self.store.get(LOCALE_KEY, "en"))

    async def load(self) -> ThemePreferences | None:
        return await self._run_load(self._read)

    async def set_theme(self, mode: ThemeMode) -> None:
        async def persist() -> None:
            self.store.set(THEME_KEY, mode.value)

        await self._optimistic(lambda data: data.model_copy(update={"mode": mode}), persist)

    async def set_locale(self, locale: str) -> None:
        if locale not in SUPPORTED_LOCALES:
            raise DataValidationError(f"Unsupported locale: {locale}")

        async def persist() -> None:
            self.store.set(LOCALE_KEY, locale)

        await self._optimistic(
            lambda data: data.model_copy(update={"locale": locale}), persist
        )


class CurrencyPreferences(BaseModel):
    model_config = ConfigDict(frozen=True)

    preferred: str = currency_utils.DEFAULT_CURRENCY
    rates: ExchangeRateEntry | None = None


class CurrencyContainer(StateContainer[CurrencyPreferences]):
    """Preferred currency and exchange rates based on it."""

    name = "currency"

    def __init__(self, store: LocalStore, rates: ExchangeRateService) -> None:
        super().__init__(CurrencyPreferences())
        self.store = store
        self.rates = rates
        self.online = True

    async def _read(self) -> CurrencyPreferences:
        preferred = currency_utils.normalize_code(self.store.get(CURRENCY_KEY))
        entry = await self.rates.get_rates(preferred, online=self.online)
        return CurrencyPreferences(preferred=preferred, rates=entry)

    async def load(self, online: bool | None = None) -> CurrencyPreferences | None:
        if online is not None:
            self.online = online
        return await self._run_load(self._read)

    async def set_currency(self, code: str) -> CurrencyPreferences | None:
        normalized = currency_utils.normalize_code(code)

        async def persist() -> None:
            self.store.set(CURRENCY_KEY, normalized)

        await self._optimistic(
            lambda data: data.model_copy(update={"preferred": normalized, "rates": None}),
            persist,
        )
        return await self.load()

    def rate(self, from_code: str, to_code: str) -> float:
        """Rate to multiply an amount in ``from_code`` by to get ``to_code``."""
        from_code, to_code = from_code.upper(), to_code.upper()
        if from_code == to_code:
            return 1.0
        entry = self.data.rates
        if entry is None:
            raise CacheError("Exchange rates are not loaded")
        # Rates are quoted as units of target per one unit of the base
        try:
            from_rate = entry.rates[from_code]
            to_rate = entry.rates[to_code]
        except KeyError as e:
            raise CacheError(f"No exchange rate for {e.args[0]}") from e
        return to_rate / from_rate

    def convert(self, amount: float, from_code: str, to_code: str | None = None) -> float:
        to_code = to_code or self.data.preferred
        return currency_utils.convert(amount, self.rate(from_code, to_code), to_code)

    def format(self, amount: float | None, code: str | None = None) -> str:
        return currency_utils.format_amount(amount, code or self.data.preferred)
