"""Header synonyms for runlist columns.

HEURISTIC_HEADERS drives mapping-free ingestion: for each field, candidate
headers are tried in order (case-insensitive) and the first one present in
the file wins. Only the fields needed to locate a vehicle on the lane are
guessed; make and model come from the registry.

SUGGESTION_HEADERS is a broader vocabulary used to pre-fill a mapping
suggestion when an auction has no mapping yet.
"""

HEURISTIC_HEADERS = {
    "vin": ["vin", "vin_number", "vinnumber", "vin number"],
    "lane_number": ["lane", "lane_number", "lane_num", "lanenumber", "lane number"],
    "run_number": ["run", "run_number", "run_num", "runnumber", "run number", "order"],
}

SUGGESTION_HEADERS = {
    "vin": ["vin", "vin number", "serial", "vehicle identification number"],
    "lane_number": ["lane", "lane number", "lane #"],
    "run_number": ["run", "run number", "run #", "order", "lot"],
    "stock_number": ["stock", "stock number", "stock #", "stk"],
    "make": ["make", "manufacturer", "mfr"],
    "model": ["model"],
    "trim": ["trim", "series", "style"],
    "year": ["year", "model year", "yr"],
    "mileage": ["mileage", "miles", "odometer", "odo"],
    "color": ["color", "exterior color", "ext color"],
    "body_type": ["body", "body type", "body style"],
    "engine": ["engine", "engine type"],
    "transmission": ["transmission", "trans"],
    "auction_price": ["price", "floor price", "reserve"],
}
