import json
from pathlib import Path


class ContractUtility:
    """
    Loads contract ABIs shipped with the package.

    ABIs live in the package's ``contracts`` folder as ``<Name>.json`` files
    holding at least an ``abi`` key.
    """

    CONTRACTS_DIR = Path(__file__).parent.parent / "contracts"

    def __init__(self, contracts_dir: Path | None = None):
        self.contracts_dir = contracts_dir or self.CONTRACTS_DIR

    def get_contract_abi(self, contract_name: str) -> list:
        """Fetches ABI of the given contract from the contracts folder"""
        contract_path = (self.contracts_dir / f"{contract_name}.json").resolve()

        with contract_path.open() as file:
            contract_data = json.load(file)

        return contract_data["abi"]
