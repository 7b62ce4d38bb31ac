"""
Arc network contract ABIs and token unit helpers.

Contract addresses live in settings.ARC_CONTRACTS so deployments can point at
redeployed contracts without code changes.
"""
from decimal import Decimal, ROUND_DOWN

TOKEN_DECIMALS = 6
DECIMAL_QUANT = Decimal('0.000001')  # 6 decimals for USDC / USYC amounts
BPS_DENOMINATOR = 10_000

# Arc pays gas in native USDC, exposed with 18 decimals
NATIVE_DECIMALS = 18

PAYROLL_TOKENS = ('USDC', 'USYC')

ERC20_ABI = [
    {"name": "balanceOf", "type": "function", "stateMutability": "view",
     "inputs": [{"name": "owner", "type": "address"}],
     "outputs": [{"name": "", "type": "uint256"}]},
    {"name": "transfer", "type": "function", "stateMutability": "nonpayable",
     "inputs": [{"name": "to", "type": "address"}, {"name": "amount", "type": "uint256"}],
     "outputs": [{"name": "", "type": "bool"}]},
    {"name": "approve", "type": "function", "stateMutability": "nonpayable",
     "inputs": [{"name": "spender", "type": "address"}, {"name": "amount", "type": "uint256"}],
     "outputs": [{"name": "", "type": "bool"}]},
    {"name": "allowance", "type": "function", "stateMutability": "view",
     "inputs": [{"name": "owner", "type": "address"}, {"name": "spender", "type": "address"}],
     "outputs": [{"name": "", "type": "uint256"}]},
    {"name": "decimals", "type": "function", "stateMutability": "view",
     "inputs": [], "outputs": [{"name": "", "type": "uint8"}]},
    {"name": "symbol", "type": "function", "stateMutability": "view",
     "inputs": [], "outputs": [{"name": "", "type": "string"}]},
]

USYC_TELLER_ABI = [
    {"name": "deposit", "type": "function", "stateMutability": "nonpayable",
     "inputs": [{"name": "depositAmount", "type": "uint256"}, {"name": "minimumMint", "type": "uint256"}],
     "outputs": [{"name": "shares", "type": "uint256"}]},
    {"name": "previewDeposit", "type": "function", "stateMutability": "view",
     "inputs": [{"name": "assets", "type": "uint256"}],
     "outputs": [{"name": "", "type": "uint256"}]},
]

BATCH_PAYROLL_ABI = [
    {"name": "executeBatchPayroll", "type": "function", "stateMutability": "nonpayable",
     "inputs": [
         {"name": "token", "type": "address"},
         {"name": "payments", "type": "tuple[]", "components": [
             {"name": "recipient", "type": "address"},
             {"name": "amount", "type": "uint256"},
         ]},
     ],
     "outputs": []},
    {"name": "emergencyWithdraw", "type": "function", "stateMutability": "nonpayable",
     "inputs": [{"name": "token", "type": "address"}], "outputs": []},
    {"name": "PayrollExecuted", "type": "event", "anonymous": False,
     "inputs": [
         {"name": "employer", "type": "address", "indexed": True},
         {"name": "staffCount", "type": "uint256", "indexed": False},
         {"name": "totalAmount", "type": "uint256", "indexed": False},
     ]},
    {"name": "PaymentSent", "type": "event", "anonymous": False,
     "inputs": [
         {"name": "recipient", "type": "address", "indexed": True},
         {"name": "amount", "type": "uint256", "indexed": False},
     ]},
]

CONTRACT_ABIS = {
    'USDC': ERC20_ABI,
    'USYC': ERC20_ABI,
    'USYC_TELLER': USYC_TELLER_ABI,
    'BATCH_PAYROLL': BATCH_PAYROLL_ABI,
}


def to_base_units(amount, decimals=TOKEN_DECIMALS):
    """Convert a decimal token amount to integer base units, rounding down."""
    quant = Decimal(1).scaleb(-decimals)
    value = Decimal(str(amount)).quantize(quant, rounding=ROUND_DOWN)
    return int(value * (Decimal(10) ** decimals))


def from_base_units(value, decimals=TOKEN_DECIMALS):
    """Convert integer base units back to a decimal token amount."""
    quant = Decimal(1).scaleb(-decimals)
    return (Decimal(int(value)) / (Decimal(10) ** decimals)).quantize(quant)
