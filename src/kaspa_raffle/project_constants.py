"""
Protocol-wide immutable parameters for raffle prize settlement.

These values define how prizes leave the treasury.
Changing them changes the cost of every payout and MUST be reviewed.
"""

# 1 KAS = 10^8 sompi
SOMPI_PER_KAS = 10**8

# KRC-20 amounts are inscribed in base units (8 decimals for most tickers)
KRC20_DECIMALS = 8

# Protocol tag and script marker of the Kasplex indexer
KRC20_PROTOCOL = "krc-20"
KASPLEX_MARKER = b"kasplex"

# Amount locked in the commit P2SH output; the reveal spends it back minus fee
COMMIT_AMOUNT_SOMPI = 30_000_000  # 0.3 KAS

# Priority fee attached to every settlement transaction
PRIORITY_FEE_SOMPI = 10_000

# Winner value written when a raffle closes without entries
NO_ENTRIES_WINNER = "No Entries"
