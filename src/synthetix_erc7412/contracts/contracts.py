import os
import json
import zlib
import requests


def load_contracts(snx):
    """
    Loads the contract registry for a synthetix instance. The shared ABIs are
    always available, deployments come from a cannon package and explicit
    ``contracts`` overrides.
    """
    contracts = {"common": load_common_contracts(snx)}

    if snx.cannon_config is None and not snx.contract_overrides:
        snx.logger.warning(
            "No cannon_config or contracts provided, only common contracts are loaded"
        )

    # if set, load cannon contracts
    if snx.cannon_config is not None:
        if "ipfs_hash" not in snx.cannon_config:
            raise ValueError("cannon_config requires an `ipfs_hash`")

        deployment_hash = snx.cannon_config["ipfs_hash"]
        snx.logger.info(
            f"Loading cannon contracts at ipfs hash ipfs://{deployment_hash}"
        )
        cannon_contracts = fetch_deploy_from_ipfs(snx, deployment_hash)
        contracts.update(cannon_contracts)

    # explicit definitions take precedence over any deployment
    if snx.contract_overrides:
        merge_contracts(contracts, parse_contract_overrides(snx, snx.contract_overrides))
    return contracts


def load_common_contracts(snx):
    """loads the ABIs shared by every network"""
    common_dir = os.path.join(os.path.dirname(os.path.abspath(__file__)), "common")
    return load_json_files_from_directory(snx, common_dir)


def make_contract_definition(snx, address, abi):
    """creates the registry entry for a contract, checksumming the address"""
    if address is not None:
        address = snx.web3.to_checksum_address(address)
    return {
        "address": address,
        "abi": abi,
        "contract": snx.web3.eth.contract(address=address, abi=abi),
    }


def load_json_files_from_directory(snx, directory):
    """load json files from a given directory, nested folders become nested keys"""
    contracts = {}

    for root, dirs, files in os.walk(directory):
        for file in files:
            if not file.endswith(".json"):
                continue

            file_path = os.path.join(root, file)
            relative_path = os.path.relpath(root, directory)
            contract_name = os.path.splitext(file)[0]

            with open(file_path, "r") as json_file:
                contract_data = json.load(json_file)

            current_level = contracts
            if relative_path != ".":
                for folder in relative_path.split(os.sep):
                    current_level = current_level.setdefault(folder, {})

            current_level[contract_name] = make_contract_definition(
                snx, contract_data.get("address"), contract_data["abi"]
            )

    return contracts


def get_contract(contracts, *path):
    """
    Resolve a contract definition by its path in the registry::

        get_contract(snx.contracts, "perpsFactory", "PerpsMarketProxy")

    :param dict contracts: The contract registry
    :param str path: Keys leading to the contract
    :return: The contract definition with ``address``, ``abi`` and ``contract``
    :rtype: dict
    """
    current_level = contracts
    for key in path:
        if not isinstance(current_level, dict) or key not in current_level:
            raise KeyError(f"Contract {'.'.join(path)} is not deployed on this network")
        current_level = current_level[key]
    return current_level


def fetch_deploy_from_ipfs(snx, ipfs_hash):
    url = f"{snx.ipfs_gateway}{ipfs_hash}"
    response = requests.get(url, timeout=30)
    response.raise_for_status()
    data = json.loads(zlib.decompress(response.content))
    return parse_contracts(snx, data)


def parse_contracts(snx, deploy_data):
    contracts = {}
    recursive_search(snx, deploy_data, contracts)
    return contracts


def recursive_search(snx, deploy_data, contracts, current_package=None):
    """walks a cannon deployment, nesting contracts under their imported package"""
    if isinstance(deploy_data, dict):
        for key, value in deploy_data.items():
            if key == "artifacts":
                recursive_search(snx, value, contracts, current_package)
            elif key == "imports":
                for package_name, package_data in value.items():
                    contracts.setdefault(package_name, {})
                    recursive_search(
                        snx, package_data, contracts[package_name], package_name
                    )
            elif key == "contracts" and isinstance(value, dict):
                for contract_name, contract_data in value.items():
                    is_valid = (
                        isinstance(contract_data, dict)
                        and "address" in contract_data
                        and "abi" in contract_data
                    )
                    if not is_valid:
                        snx.logger.warning(f"Invalid contract data for {contract_name}")
                    elif current_package is None:
                        snx.logger.warning(
                            f"Contract {contract_name} found outside of a package"
                        )
                    else:
                        contracts[contract_name] = make_contract_definition(
                            snx, contract_data["address"], contract_data["abi"]
                        )
            elif isinstance(value, (dict, list)):
                recursive_search(snx, value, contracts, current_package)
    elif isinstance(deploy_data, list):
        for item in deploy_data:
            recursive_search(snx, item, contracts, current_package)


def parse_contract_overrides(snx, overrides):
    """
    Build registry entries from a nested mapping of ``{"address", "abi"}``
    definitions::

        {"perpsFactory": {"PerpsMarketProxy": {"address": "0x...", "abi": [...]}}}
    """
    contracts = {}
    for key, value in overrides.items():
        if not isinstance(value, dict):
            raise ValueError(f"Invalid contract definition for {key}")
        if "abi" in value:
            contracts[key] = make_contract_definition(
                snx, value.get("address"), value["abi"]
            )
        else:
            contracts[key] = parse_contract_overrides(snx, value)
    return contracts


def merge_contracts(contracts, new_contracts):
    """merge nested registries, replacing contract definitions in place"""
    for key, value in new_contracts.items():
        is_package = "contract" not in value
        if is_package and isinstance(contracts.get(key), dict):
            merge_contracts(contracts[key], value)
        else:
            contracts[key] = value
    return contracts
