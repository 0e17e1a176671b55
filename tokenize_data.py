#!/usr/bin/env python3
"""Build a symbol vocabulary and pre-tokenize text for the character LSTM.

Usage:
    python tokenize_data.py input.txt output.bin --vocab output.vocab [--tokenizer char]
    python tokenize_data.py names.csv output.bin --vocab output.vocab --csv-column 1 --limit 1000

Binary token format (.bin):
    bytes 0-3:   magic 0x4C53544D ("LSTM")
    bytes 4-7:   vocab_size (uint32)
    bytes 8-11:  num_tokens (uint32)
    bytes 12+:   int32[] token indices into the vocab file

Vocab format (.vocab):
    bytes 0-3:   magic 0x564F4342 ("VOCB")
    bytes 4-7:   vocab_size (uint32)
    bytes 8+:    for each symbol: uint16 length, then UTF-8 bytes
"""

import argparse
import csv
import random
import re
import struct
import sys

import numpy as np

MAGIC_TOKENS = 0x4C53544D  # "LSTM"
MAGIC_VOCAB  = 0x564F4342  # "VOCB"


class UnknownTokenError(KeyError):
    pass


# ---------------------------------------------------------------------------
# Vocabulary
# ---------------------------------------------------------------------------

class Vocabulary:
    """Bidirectional symbol <-> index mapping over a closed set of symbols."""
    __slots__ = ['index_to_token', 'token_to_index']

    def __init__(self, index_to_token):
        self.index_to_token = list(index_to_token)
        self.token_to_index = {tok: i for i, tok in enumerate(self.index_to_token)}
        if len(self.token_to_index) != len(self.index_to_token):
            raise ValueError("Vocabulary symbols must be unique")

    @classmethod
    def build(cls, symbols, shuffle=True):
        """Deduplicate `symbols` (first occurrence wins) and optionally shuffle."""
        unique = list(dict.fromkeys(symbols))
        if shuffle:
            random.shuffle(unique)
        return cls(unique)

    def __len__(self):
        return len(self.index_to_token)

    def __contains__(self, token):
        return token in self.token_to_index

    def index(self, token):
        try:
            return self.token_to_index[token]
        except KeyError:
            raise UnknownTokenError(f"Symbol {token!r} is not in the vocabulary") from None

    def encode(self, symbols):
        return np.array([self.index(s) for s in symbols], dtype=np.int32)

    def decode(self, indices):
        return "".join(self.index_to_token[int(i)] for i in indices)


# ---------------------------------------------------------------------------
# Text loading
# ---------------------------------------------------------------------------

def normalize_text(text):
    return re.sub(r"\s+", " ", text.lower()).strip()


def load_csv_column(path, column=1, limit=1000):
    """Return the first `limit` values of `column` from a CSV file with a header row."""
    values = []
    with open(path, "r", encoding="utf-8", newline="") as f:
        reader = csv.reader(f)
        next(reader, None)
        for row in reader:
            if len(values) >= limit:
                break
            if column < len(row):
                values.append(row[column])
    return values


def load_text(path, csv_column=None, limit=1000):
    """Read a corpus: plain text, or the given column of a CSV joined by spaces."""
    if csv_column is not None:
        text = " ".join(load_csv_column(path, csv_column, limit))
    else:
        with open(path, "r", encoding="utf-8") as f:
            text = f.read()
    return normalize_text(text)


def symbolize(text, tokenizer="char"):
    """Split text into symbols: characters, or the decoded tokens of a tiktoken encoding."""
    if tokenizer == "char":
        return list(text)

    import tiktoken

    enc = tiktoken.get_encoding(tokenizer)
    return [enc.decode([t]) for t in enc.encode(text, allowed_special=set())]


# ---------------------------------------------------------------------------
# Binary files
# ---------------------------------------------------------------------------

def write_tokens(path, tokens, vocab_size):
    tokens = np.asarray(tokens, dtype=np.int32)
    with open(path, "wb") as f:
        f.write(struct.pack("<III", MAGIC_TOKENS, vocab_size, len(tokens)))
        f.write(tokens.astype("<i4").tobytes())


def read_tokens(path):
    with open(path, "rb") as f:
        magic, vocab_size, num_tokens = struct.unpack("<III", f.read(12))
        if magic != MAGIC_TOKENS:
            raise ValueError(f"Bad magic in {path}: {magic:#x}")
        tokens = np.frombuffer(f.read(num_tokens * 4), dtype="<i4").astype(np.int32)
    if len(tokens) != num_tokens:
        raise ValueError(f"Truncated token file {path}: {len(tokens)} of {num_tokens} tokens")
    return tokens, vocab_size


def write_vocab(path, vocab):
    with open(path, "wb") as f:
        f.write(struct.pack("<II", MAGIC_VOCAB, len(vocab)))
        for token in vocab.index_to_token:
            token_bytes = token.encode("utf-8")
            f.write(struct.pack("<H", len(token_bytes)))
            f.write(token_bytes)


def read_vocab(path):
    with open(path, "rb") as f:
        magic, vocab_size = struct.unpack("<II", f.read(8))
        if magic != MAGIC_VOCAB:
            raise ValueError(f"Bad magic in {path}: {magic:#x}")
        symbols = []
        for _ in range(vocab_size):
            (length,) = struct.unpack("<H", f.read(2))
            symbols.append(f.read(length).decode("utf-8"))
    return Vocabulary(symbols)


def tokenize_file(input_path, output_path, vocab_path, tokenizer_name="char",
                  csv_column=None, limit=1000):
    print(f"Reading {input_path}...")
    text = load_text(input_path, csv_column, limit)

    symbols = symbolize(text, tokenizer_name)
    vocab = Vocabulary.build(symbols)
    tokens = vocab.encode(symbols)
    print(f"  {len(text)} chars -> {len(tokens)} symbols, vocab_size={len(vocab)} ({tokenizer_name})")

    write_tokens(output_path, tokens, len(vocab))
    write_vocab(vocab_path, vocab)
    print(f"  Wrote {output_path} and {vocab_path}")
    return text


def verify_roundtrip(bin_path, vocab_path, text):
    """Check that decoding the binary file reproduces the normalized text."""
    tokens, vocab_size = read_tokens(bin_path)
    vocab = read_vocab(vocab_path)
    if vocab_size != len(vocab):
        print(f"Round-trip verification: FAILED (vocab size {vocab_size} vs {len(vocab)})")
        return False

    decoded = vocab.decode(tokens)
    if decoded == text:
        print("Round-trip verification: PASSED")
        return True

    for i, (a, b) in enumerate(zip(decoded, text)):
        if a != b:
            print(f"Round-trip verification: FAILED at char {i}")
            print(f"  Original: ...{text[max(0, i - 20):i + 20]!r}...")
            print(f"  Decoded:  ...{decoded[max(0, i - 20):i + 20]!r}...")
            break
    else:
        print(f"Round-trip verification: FAILED (length mismatch: "
              f"{len(decoded)} vs {len(text)})")
    return False


def main():
    parser = argparse.ArgumentParser(description="Pre-tokenize text for the character LSTM")
    parser.add_argument("input", help="Input text or CSV file")
    parser.add_argument("output", help="Output binary token file")
    parser.add_argument("--vocab", required=True, metavar="PATH", help="Output vocab file")
    parser.add_argument("--tokenizer", default="char",
                        help="'char' or a tiktoken encoding name (default: char)")
    parser.add_argument("--csv-column", type=int, default=None,
                        help="Read this column of a CSV file instead of plain text")
    parser.add_argument("--limit", type=int, default=1000, help="Max CSV rows (default: 1000)")
    parser.add_argument("--seed", type=int, default=None, help="Seed for the vocabulary order")
    parser.add_argument("--verify", action="store_true", help="Verify round-trip after tokenizing")
    args = parser.parse_args()

    if args.seed is not None:
        random.seed(args.seed)

    try:
        text = tokenize_file(args.input, args.output, args.vocab, args.tokenizer,
                             args.csv_column, args.limit)
    except IOError:
        print(f"Error opening datafile {args.input}")
        sys.exit(1)

    if args.verify and not verify_roundtrip(args.output, args.vocab, text):
        sys.exit(1)


if __name__ == "__main__":
    main()
