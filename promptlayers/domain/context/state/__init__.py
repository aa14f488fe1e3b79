# Conversation state = which message store belongs to which conversation.

# Each conversation (the default chat, or one per project) owns exactly one
# MessageStore. Stores never share messages, so turns in one project can
# neither see nor deduplicate against another project's history.

# The registry is owned by the orchestrating layer (ChatManager), never by
# module-level globals.
