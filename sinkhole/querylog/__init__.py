"""Writers for DNS query logs: discard, logger, tab-separated files and SQL databases."""