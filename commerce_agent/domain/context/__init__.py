# Mode & context engine
#
#   utterance + ConversationState
#        |
#        v
#   ModeDetector      sticky b2c / b2b decision from weighted signals,
#        |            cart volume and historical order volume
#        v
#   ContextEnricher   entities (categories, brands, prices, SKUs, quantities)
#        |            plus cart inventory, cart pricing, account context
#        v            fetched in parallel; failed branches are degraded
#   ContextWindow     last N messages for the model, history truncation
#        |
#        v
#   [model / action selection]
