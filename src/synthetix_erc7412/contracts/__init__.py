from .contracts import load_contracts, get_contract
