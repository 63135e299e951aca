# Two cache tiers in front of the commerce backend
#
#   lookup:  L1 (in-process LRU + TTL)  ->  L2 (shared backend)  ->  miss
#   write:   L1 and L2
#   evict:   TTL, LRU bound, or tag invalidation (e.g. cart:<cart_id>)
