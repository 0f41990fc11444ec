"""Pure helpers: option symbols, position keys, P&L math, clocks."""
