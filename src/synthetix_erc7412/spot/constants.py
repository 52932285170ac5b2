DISABLED_MARKETS = {
    8453: [],
    84532: [],
    42161: [],
    421614: [],
}

# synths that swap 1:1 with sUSD
ONE_TO_ONE_MARKETS = {
    8453: ["sUSDC"],
    84532: ["sUSDC"],
}

SYNTH_PAGE_SIZE = 5
MAX_SYNTH_PAGES = 20
