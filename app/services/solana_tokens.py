from dataclasses import dataclass


@dataclass(frozen=True)
class SolanaToken:
    symbol: str
    mint: str | None
    decimals: int

    @property
    def is_native(self) -> bool:
        return self.mint is None


LAMPORTS_PER_SOL = 1_000_000_000

SOL = SolanaToken(symbol="SOL", mint=None, decimals=9)
USDC = SolanaToken(symbol="USDC", mint="EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v", decimals=6)
USDT = SolanaToken(symbol="USDT", mint="Es9vMFrzaCERmJfrF4H2FYD4KCoNkY11McCe8BenwNYB", decimals=6)

TOKEN_MAP: dict[str, SolanaToken] = {t.symbol: t for t in [SOL, USDC, USDT]}


def get_token(symbol: str | None) -> SolanaToken:
    """Look up a supported payment token; unknown symbols raise ValueError."""
    key = (symbol or "SOL").strip().upper()
    try:
        return TOKEN_MAP[key]
    except KeyError:
        raise ValueError(f"Unsupported payment token: {symbol}") from None
