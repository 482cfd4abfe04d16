# State = the working state carried between turns of a session.

# It is "the NOW" for the session, including:

# Domain activations (CD, SD, CuD, ED)

# Boundary permeability, status and oscillator phase

# Patterns recognized on the latest turn

# Per-boundary qualities and the developmental stage

# Seeded from the user's latest snapshot when a session first needs it
