SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS seeker_wallets (
    wallet_address TEXT PRIMARY KEY,
    sgt_mint_address TEXT NOT NULL,
    first_seen TEXT NOT NULL,
    last_active TEXT,
    is_active INTEGER NOT NULL DEFAULT 1
);

CREATE TABLE IF NOT EXISTS daily_snapshots (
    date TEXT PRIMARY KEY,
    total_sgt_holders INTEGER,
    active_wallets_24h INTEGER,
    total_transactions INTEGER,
    swap_count INTEGER,
    swap_volume_sol REAL,
    total_sol_held REAL,
    total_value_usd REAL,
    skr_price REAL,
    skr_market_cap REAL,
    skr_staked_pct REAL,
    sol_price REAL,
    holdings_sample_size INTEGER,
    activity_sample_size INTEGER,
    activity_scale_factor REAL,
    created_at TEXT NOT NULL,
    updated_at TEXT
);

CREATE TABLE IF NOT EXISTS wallet_holdings (
    wallet_address TEXT NOT NULL,
    token_mint TEXT NOT NULL,
    token_symbol TEXT,
    amount REAL,
    decimals INTEGER,
    value_usd REAL,
    updated_at TEXT,
    PRIMARY KEY (wallet_address, token_mint)
);

CREATE TABLE IF NOT EXISTS dapp_interactions (
    date TEXT NOT NULL,
    program_id TEXT NOT NULL,
    program_name TEXT,
    category TEXT,
    unique_wallets INTEGER,
    tx_count INTEGER,
    volume_sol REAL,
    PRIMARY KEY (date, program_id)
);

CREATE TABLE IF NOT EXISTS skr_metrics (
    date TEXT PRIMARY KEY,
    price REAL,
    market_cap REAL,
    volume_24h REAL,
    circulating_supply REAL,
    total_staked REAL,
    staked_pct REAL,
    holders_count INTEGER
);

CREATE TABLE IF NOT EXISTS pipeline_runs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    stage TEXT NOT NULL,
    status TEXT NOT NULL,
    started_at TEXT NOT NULL,
    finished_at TEXT,
    records INTEGER,
    notes TEXT
);

CREATE TABLE IF NOT EXISTS cursor_state (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_wallets_last_active ON seeker_wallets(last_active);
CREATE INDEX IF NOT EXISTS idx_holdings_wallet ON wallet_holdings(wallet_address);
CREATE INDEX IF NOT EXISTS idx_holdings_token ON wallet_holdings(token_mint);
CREATE INDEX IF NOT EXISTS idx_dapp_date ON dapp_interactions(date);
CREATE INDEX IF NOT EXISTS idx_runs_started ON pipeline_runs(started_at);
"""
