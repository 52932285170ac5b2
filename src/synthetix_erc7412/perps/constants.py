DISABLED_MARKETS = {
    8453: [],
    84532: [],
    42161: [],
    421614: [],
}

# staleness tolerance of prepared price updates, in seconds
PREPARED_ORACLE_STALENESS = 30
