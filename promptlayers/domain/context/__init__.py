 # This module handles prompt context layering

# +---------------------+
# |   MessageStore      |   (One per conversation, in memory)
# |---------------------|
# | display text        |
# | processed text      |
# | envelope per turn   |
# +---------------------+
#         |
#         |  earlier turns' L3 segments
#         v
# +------------------------------+
# |        ContextManager        |   (Assembled once per turn)
# |------------------------------|
# | L1  system prompt            |
# | L2  previous-turn library    |
# | L3  this turn's new context  |
# | L5  user text                |
# +------------------------------+
#         |
#         |  too large? -> ContextCompactor
#         v
#   [envelope -> LayerToMessagesConverter -> model]
