import os
import time
import concurrent.futures
from dotenv import load_dotenv
from web3.constants import ADDRESS_ZERO
from synthetix_erc7412 import Synthetix
from synthetix_erc7412.exceptions import SynthetixError

load_dotenv()

PROVIDER_RPC_URL = os.environ.get("PROVIDER_RPC")
ADDRESS = os.environ.get("ADDRESS", ADDRESS_ZERO)
PRIVATE_KEY = os.environ.get("PRIVATE_KEY")
CANNON_IPFS_HASH = os.environ.get("CANNON_IPFS_HASH")
ACCOUNT_IDS = [int(a) for a in os.environ.get("ACCOUNT_IDS", "").split(",") if a]

# seconds between checks
CHECK_INTERVAL = 30
BATCH_SIZE = 50


class Keeper:
    def __init__(self):
        self.snx = Synthetix(
            provider_rpc=PROVIDER_RPC_URL,
            private_key=PRIVATE_KEY,
            address=ADDRESS,
            cannon_config={"ipfs_hash": CANNON_IPFS_HASH} if CANNON_IPFS_HASH else None,
        )

    def check_batch(self, account_ids):
        # prices are fulfilled once per batch, each batch is an independent multicall
        return self.snx.perps.get_can_liquidates(account_ids)

    def liquidate(self, account_id):
        reward = self.snx.perps.liquidate(account_id, static=True)
        if reward == 0:
            self.snx.logger.info(f"Nothing to liquidate for account {account_id}")
            return None
        return self.snx.perps.liquidate(account_id, submit=True)

    def run_once(self):
        batches = [
            ACCOUNT_IDS[i : i + BATCH_SIZE] for i in range(0, len(ACCOUNT_IDS), BATCH_SIZE)
        ]

        with concurrent.futures.ThreadPoolExecutor() as executor:
            results = executor.map(self.check_batch, batches)
            eligible = [
                account_id
                for batch in results
                for account_id, can_liquidate in batch
                if can_liquidate
            ]

        self.snx.logger.info(f"{len(eligible)} of {len(ACCOUNT_IDS)} accounts can be liquidated")

        # transactions share the nonce, submit them in order
        for account_id in eligible:
            try:
                tx_hash = self.liquidate(account_id)
                if tx_hash:
                    self.snx.wait(tx_hash)
            except SynthetixError as e:
                self.snx.logger.error(f"Failed to liquidate account {account_id}: {e}")


def main():
    keeper = Keeper()
    while True:
        keeper.run_once()
        time.sleep(CHECK_INTERVAL)


if __name__ == "__main__":
    main()
