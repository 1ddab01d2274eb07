"""Unit tests for theme and currency preferences."""

import pytest

from receiptsync.errors import CacheError, DataValidationError
from receiptsync.integrations.exchange_rates import ExchangeRateService, cache_key
from receiptsync.local_store import LocalStore
from receiptsync.models import ExchangeRateEntry, ThemeMode
from receiptsync.state.preferences import CurrencyContainer, ThemeContainer

pytestmark = pytest.mark.unit


@pytest.fixture
def store(tmp_path):
    return LocalStore(tmp_path / "store.json")


def seed_rates(store, base, rates):
    entry = ExchangeRateEntry(base=base, rates=rates)
    store.set(cache_key(base), entry.model_dump(mode="json"))


class TestThemeContainer:
    @pytest.mark.asyncio
    async def test_defaults(self, store):
        theme = ThemeContainer(store)
        prefs = await theme.load()
        assert prefs.mode is ThemeMode.SYSTEM
        assert prefs.locale == "en"

    @pytest.mark.asyncio
    async def test_set_theme_persists(self, store):
        theme = ThemeContainer(store)
        await theme.set_theme(ThemeMode.DARK)
        await theme.set_locale("ms")

        reloaded = await ThemeContainer(store).load()
        assert reloaded.mode is ThemeMode.DARK
        assert reloaded.locale == "ms"

    @pytest.mark.asyncio
    async def test_unknown_stored_theme(self, store):
        store.set("theme", "sepia")
        prefs = await ThemeContainer(store).load()
        assert prefs.mode is ThemeMode.SYSTEM

    @pytest.mark.asyncio
    async def test_unsupported_locale(self, store):
        theme = ThemeContainer(store)
        with pytest.raises(DataValidationError):
            await theme.set_locale("fr")
        assert theme.data.locale == "en"

    @pytest.mark.asyncio
    async def test_listeners_notified(self, store):
        theme = ThemeContainer(store)
        seen = []
        theme.subscribe(lambda state: seen.append(state.data.mode))
        await theme.set_theme(ThemeMode.LIGHT)
        assert seen == [ThemeMode.LIGHT]


class TestCurrencyContainer:
    """Test cases for the preferred currency and conversions."""

    @pytest.fixture
    def container(self, store):
        seed_rates(store, "MYR", {"MYR": 1.0, "USD": 0.21, "SGD": 0.29})
        seed_rates(store, "USD", {"USD": 1.0, "MYR": 4.7})
        return CurrencyContainer(store, ExchangeRateService(store))

    @pytest.mark.asyncio
    async def test_load_uses_cached_rates(self, container):
        prefs = await container.load()
        assert prefs.preferred == "MYR"
        assert prefs.rates.rates["USD"] == 0.21

    @pytest.mark.asyncio
    async def test_rate_and_convert(self, container):
        await container.load()
        assert container.rate("MYR", "MYR") == 1.0
        assert container.rate("MYR", "USD") == 0.21
        assert container.rate("USD", "SGD") == pytest.approx(0.29 / 0.21)
        assert container.convert(21, "USD") == 100.0
        assert container.format(1234.5) == "MYR 1,234.50"

    @pytest.mark.asyncio
    async def test_missing_rate(self, container):
        await container.load()
        with pytest.raises(CacheError, match="JPY"):
            container.rate("MYR", "JPY")

    def test_rates_not_loaded(self, store):
        container = CurrencyContainer(store, ExchangeRateService(store))
        with pytest.raises(CacheError):
            container.rate("MYR", "USD")

    @pytest.mark.asyncio
    async def test_set_currency_normalizes_and_reloads(self, container, store):
        prefs = await container.set_currency("usd")
        assert prefs.preferred == "USD"
        assert prefs.rates.base == "USD"
        assert store.get("currency") == "USD"

        await container.set_currency("RM")
        assert container.data.preferred == "MYR"

    @pytest.mark.asyncio
    async def test_offline_without_rates_records_error(self, store):
        container = CurrencyContainer(store, ExchangeRateService(store))
        assert await container.load(online=False) is None
        assert "offline" in container.error
