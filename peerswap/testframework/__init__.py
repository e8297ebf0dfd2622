"""Harness for starting and driving regtest bitcoind, elementsd and lightningd daemons."""