# This module handles Context engineering

#  +---------------------+
# |      Memory         |   (Persistent, tiered, SQLite)
# |---------------------|
# | Hot: last 5 turns   |
# | Warm: earlier turns |
# | Cold: ended sessions|
# +---------------------+

# +---------------------+
# |      State          |   (Current, per session)
# |---------------------|
# | Domain activations  |
# | Boundary states     |
# | Patterns, qualities |
# +---------------------+

#    \    /
#     \  /
#      \/
# +------------------------------+
# |           Context            |   (Assembled per turn)
# |------------------------------|
# | Hot history                  |
# | Ranked warm + cold turns     |
# |   under a token budget       |
# | Current input (msg)          |
# +------------------------------+
#         |
#         v
#   [recognition model / response model]
