"""
ABI of the contest contract, limited to the surface the orchestrator uses.

Odds fields are fixed-point integers with ODDS_DECIMALS implicit decimals.
"""
import json

CONTEST_ABI = json.loads('''
[
  {
    "type": "function", "name": "startCycle", "stateMutability": "nonpayable",
    "inputs": [{
      "name": "matches", "type": "tuple[10]",
      "components": [
        {"name": "id", "type": "uint64"},
        {"name": "kickoff", "type": "uint64"},
        {"name": "oddsHome", "type": "uint32"},
        {"name": "oddsDraw", "type": "uint32"},
        {"name": "oddsAway", "type": "uint32"},
        {"name": "oddsOver", "type": "uint32"},
        {"name": "oddsUnder", "type": "uint32"}
      ]
    }],
    "outputs": []
  },
  {
    "type": "function", "name": "resolveCycle", "stateMutability": "nonpayable",
    "inputs": [
      {"name": "cycleId", "type": "uint256"},
      {
        "name": "results", "type": "tuple[10]",
        "components": [
          {"name": "moneyline", "type": "uint8"},
          {"name": "overUnder", "type": "uint8"}
        ]
      }
    ],
    "outputs": []
  },
  {
    "type": "function", "name": "currentCycleId", "stateMutability": "view",
    "inputs": [],
    "outputs": [{"name": "", "type": "uint256"}]
  },
  {
    "type": "function", "name": "cycle", "stateMutability": "view",
    "inputs": [{"name": "cycleId", "type": "uint256"}],
    "outputs": [
      {"name": "id", "type": "uint256"},
      {"name": "startTime", "type": "uint64"},
      {"name": "endTime", "type": "uint64"},
      {"name": "slipCount", "type": "uint32"},
      {"name": "isResolved", "type": "bool"},
      {"name": "slateHash", "type": "bytes32"}
    ]
  },
  {
    "type": "function", "name": "isCycleResolved", "stateMutability": "view",
    "inputs": [{"name": "cycleId", "type": "uint256"}],
    "outputs": [{"name": "", "type": "bool"}]
  },
  {
    "type": "function", "name": "getSlip", "stateMutability": "view",
    "inputs": [{"name": "slipId", "type": "uint256"}],
    "outputs": [
      {"name": "player", "type": "address"},
      {"name": "cycleId", "type": "uint256"},
      {"name": "placedAt", "type": "uint64"},
      {"name": "correctCount", "type": "uint8"},
      {"name": "finalScore", "type": "uint256"},
      {"name": "isEvaluated", "type": "bool"}
    ]
  },
  {
    "type": "function", "name": "userStats", "stateMutability": "view",
    "inputs": [{"name": "player", "type": "address"}],
    "outputs": [
      {"name": "totalSlips", "type": "uint256"},
      {"name": "totalWins", "type": "uint256"},
      {"name": "bestScore", "type": "uint256"},
      {"name": "currentStreak", "type": "uint256"},
      {"name": "bestStreak", "type": "uint256"}
    ]
  },
  {
    "type": "event", "name": "CycleStarted", "anonymous": false,
    "inputs": [
      {"name": "cycleId", "type": "uint256", "indexed": true},
      {"name": "slateHash", "type": "bytes32", "indexed": false}
    ]
  },
  {
    "type": "event", "name": "CycleResolved", "anonymous": false,
    "inputs": [
      {"name": "cycleId", "type": "uint256", "indexed": true},
      {"name": "resultHash", "type": "bytes32", "indexed": false}
    ]
  },
  {
    "type": "event", "name": "SlipPlaced", "anonymous": false,
    "inputs": [
      {"name": "cycleId", "type": "uint256", "indexed": true},
      {"name": "slipId", "type": "uint256", "indexed": true},
      {"name": "player", "type": "address", "indexed": true},
      {
        "name": "predictions", "type": "tuple[10]", "indexed": false,
        "components": [
          {"name": "fixtureId", "type": "uint64"},
          {"name": "market", "type": "uint8"},
          {"name": "selection", "type": "uint8"},
          {"name": "odds", "type": "uint32"}
        ]
      }
    ]
  },
  {
    "type": "event", "name": "PrizeClaimed", "anonymous": false,
    "inputs": [
      {"name": "cycleId", "type": "uint256", "indexed": true},
      {"name": "player", "type": "address", "indexed": true},
      {"name": "rank", "type": "uint256", "indexed": false},
      {"name": "amount", "type": "uint256", "indexed": false}
    ]
  }
]
''')

EVENT_SIGNATURES = {
    "CycleStarted": "CycleStarted(uint256,bytes32)",
    "CycleResolved": "CycleResolved(uint256,bytes32)",
    "SlipPlaced": "SlipPlaced(uint256,uint256,address,(uint64,uint8,uint8,uint32)[10])",
    "PrizeClaimed": "PrizeClaimed(uint256,address,uint256,uint256)",
}

SLATE_HASH_TYPE = "(uint64,uint32,uint32,uint32,uint32,uint32)[10]"
RESULT_HASH_TYPE = "(uint8,uint8)[10]"
