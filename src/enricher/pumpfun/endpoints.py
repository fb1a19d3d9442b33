BASE_URL = "https://frontend-api-v3.pump.fun"

COIN = "/coins/{mint}"
CANDLES = "/coins/{mint}/candles"
TRADES_BATCH = "/coins/{mint}/trades/batch"
