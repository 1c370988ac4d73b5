import pytest

from cofund_sale.accounts import NativeBank
from cofund_sale.deploy import deploy_sale

ETH = 10**18
START_TIME = 1710000000


def addr(n: int) -> str:
    return "0x" + f"{n:040x}"


OWNER = addr(1)
TREASURY = addr(2)
SALE = addr(0xC0FD)
ALICE = addr(0xA11CE)
BOB = addr(0xB0B)
CAROL = addr(0xCA201)


class FakeClock:
    def __init__(self, now: int = START_TIME):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: int) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def bank():
    bank = NativeBank()
    for account in (ALICE, BOB, CAROL):
        bank.credit(account, 10 * ETH)
    return bank


@pytest.fixture
def deployment(bank, clock):
    return deploy_sale(owner=OWNER, treasury=TREASURY, sale_address=SALE, bank=bank, clock=clock)


@pytest.fixture
def sale(deployment):
    return deployment.sale
