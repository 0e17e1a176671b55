"""Train a character-level LSTM on a corpus of names and sample new ones."""

import argparse
import random
import sys

import numpy as np
from tqdm import tqdm

from lstm import (
    LSTM, PARAM_NAMES, AdamState, ConfigurationError, InsufficientDataError, Parameters,
)
from tokenize_data import (
    Vocabulary, load_text, normalize_text, read_tokens, read_vocab, symbolize,
)


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------

def _as_matrix(arr):
    return np.ascontiguousarray(arr, dtype=np.float64)


def save_model(model, path, tokenizer="char"):
    """Write parameters, optimizer state, carry state, vocabulary and tokenizer name to an .npz archive."""
    arrays = {}
    for name, mat in model.params.items():
        arrays[name] = mat
        arrays['m_' + name] = getattr(model.adam.m, name)
        arrays['v_' + name] = getattr(model.adam.v, name)
    arrays['h'] = model.h
    arrays['c'] = model.c
    arrays['vocab'] = np.array(model.vocab.index_to_token, dtype=str)
    arrays["tokenizer"] = np.array(tokenizer, dtype=str)
    arrays['adam_t'] = np.array(model.adam.t, dtype=np.int64)
    arrays['smooth_loss'] = np.array(model.smooth_loss, dtype=np.float64)
    hp = model.hyperparameters()
    arrays['hyperparameters'] = np.array([hp['epochs'], hp['learning_rate'], hp['n_hidden'],
                                          hp['seq_len'], hp['beta1'], hp['beta2']],
                                         dtype=np.float64)
    with open(path, 'wb') as f:
        np.savez(f, **arrays)


def load_model(path):
    with np.load(path) as data:
        epochs, learning_rate, n_hidden, seq_len, beta1, beta2 = data['hyperparameters'].tolist()
        model = LSTM(int(epochs), learning_rate, int(n_hidden), int(seq_len), beta1, beta2)
        model.vocab = Vocabulary(data['vocab'].tolist())
        model.params = Parameters(**{name: _as_matrix(data[name]) for name in PARAM_NAMES})
        model.adam = AdamState(model.params)
        model.adam.m = Parameters(**{name: _as_matrix(data['m_' + name]) for name in PARAM_NAMES})
        model.adam.v = Parameters(**{name: _as_matrix(data['v_' + name]) for name in PARAM_NAMES})
        model.adam.t = int(data['adam_t'])
        model.smooth_loss = float(data['smooth_loss'])
        model.h = _as_matrix(data['h'])
        model.c = _as_matrix(data['c'])

    if model.params.Wv.shape != (len(model.vocab), model.n_hidden):
        raise ValueError(f"Model file {path} is inconsistent: Wv has shape {model.params.Wv.shape} "
                         f"for vocab_size={len(model.vocab)}, n_hidden={model.n_hidden}")
    return model


def load_tokenizer(path):
    """Name of the symbolizer a saved model was trained with ('char' for older files)."""
    with np.load(path) as data:
        return str(data["tokenizer"]) if "tokenizer" in data.files else "char"


# ---------------------------------------------------------------------------
# Training data
# ---------------------------------------------------------------------------

def load_training_symbols(args):
    """Return (symbols, vocab) from a pre-tokenized .bin/.vocab pair, or (symbols, None) from raw text/CSV."""
    if args.vocab:
        tokens, vocab_size = read_tokens(args.data)
        vocab = read_vocab(args.vocab)
        if vocab_size != len(vocab):
            raise ValueError(f"{args.data} expects vocab_size={vocab_size}, "
                             f"{args.vocab} has {len(vocab)}")
        if len(tokens) and (tokens.min() < 0 or tokens.max() >= len(vocab)):
            raise ValueError(f"{args.data} has token indices outside the vocabulary")
        return [vocab.index_to_token[t] for t in tokens], vocab

    text = load_text(args.data, args.csv_column, args.limit)
    return symbolize(text, args.tokenizer), None


def report_progress(p):
    tqdm.write(f"Epoch: {p.epoch}\tBatch: {p.batch_start} - {p.batch_end}\t"
               f"Loss: {p.smooth_loss:.2f}\n{p.sample}\n")


def ask_yes_no(prompt):
    return input(prompt).strip().lower() == 'y'


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def cmd_train(args):
    try:
        symbols, vocab = load_training_symbols(args)
    except IOError:
        print(f"Error opening training datafile {args.data}")
        sys.exit(1)
    except ValueError as e:
        print(f"Error: {e}")
        sys.exit(1)
    print(f"Training data: {len(symbols)} symbols from {args.data}")

    try:
        model = LSTM(args.epochs, args.learning_rate, args.hidden, args.seq_len,
                     args.beta1, args.beta2)
        print(f"Training {model!r}")
        model.train(symbols, on_progress=report_progress,
                    report_every=args.report_every, verbose=True, vocab=vocab)
    except (ConfigurationError, InsufficientDataError) as e:
        print(f"Error: {e}")
        sys.exit(1)
    print(f"Vocab size: {model.vocab_size}, smoothed loss: {model.smooth_loss:.3f}")

    save = args.save if args.save is not None else ask_yes_no('Save this model? (y|[n]): ')
    if save:
        save_model(model, args.model, args.tokenizer)
        print(f"Saved model to {args.model}")
    return model


def cmd_predict(args):
    try:
        model = load_model(args.model)
        tokenizer = load_tokenizer(args.model)
    except IOError:
        print(f"Error opening model file {args.model}")
        sys.exit(1)
    except (KeyError, ValueError) as e:
        print(f"Error reading model file {args.model}: {e}")
        sys.exit(1)

    prefix = args.prefix
    while not prefix:
        prefix = input("Enter start of the name:\n").strip()

    symbols = symbolize(normalize_text(prefix), tokenizer)
    unknown = sorted({s for s in symbols if s not in model.vocab})
    if unknown:
        print(f"Error: symbols not in the vocabulary: {unknown!r}")
        sys.exit(1)

    name = model.predict(symbols, args.length, args.temperature)
    print(f"The name is: {name}")
    return name


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------

def positive_int(text):
    value = int(text)
    if value < 1:
        raise argparse.ArgumentTypeError(f"must be at least 1, {value} given")
    return value


def positive_float(text):
    value = float(text)
    if value <= 0.0:
        raise argparse.ArgumentTypeError(f"must be greater than 0, {value} given")
    return value


def build_parser():
    parser = argparse.ArgumentParser(description="Character-level LSTM")
    sub = parser.add_subparsers(dest='command', required=True)

    train = sub.add_parser('train', help='Train a model')
    train.add_argument('data', type=str, help='Path to training text, CSV or .bin token file')
    train.add_argument('--vocab', type=str, default=None,
                       help='Vocab file from tokenize_data.py (DATA is then a .bin token file)')
    train.add_argument('--csv-column', type=int, default=None,
                       help='Read this column of a CSV file (e.g. 1 for NationalNames.csv)')
    train.add_argument('--limit', type=int, default=1000, help='Max CSV rows')
    train.add_argument('--tokenizer', type=str, default='char',
                       help="'char' or a tiktoken encoding name (default: char)")
    train.add_argument('--epochs', type=int, default=300)
    train.add_argument('--learning-rate', type=float, default=0.001)
    train.add_argument('--hidden', type=int, default=30, help='Units in the hidden layer')
    train.add_argument('--seq-len', type=int, default=5)
    train.add_argument('--beta1', type=float, default=0.9)
    train.add_argument('--beta2', type=float, default=0.999)
    train.add_argument('--seed', type=int, default=None)
    train.add_argument('--report-every', type=positive_int, default=10000,
                       help='Report progress every N batches within an epoch')
    train.add_argument('--model', type=str, default='names.npz')
    train.add_argument('--save', action=argparse.BooleanOptionalAction, default=None,
                       help='Save without asking (--no-save to skip)')
    train.set_defaults(func=cmd_train)

    predict = sub.add_parser('predict', help='Complete a name with a trained model')
    predict.add_argument('--model', type=str, default='names.npz')
    predict.add_argument('--prefix', type=str, default=None)
    predict.add_argument('--length', type=int, default=20)
    predict.add_argument('--temperature', type=positive_float, default=1.0)
    predict.add_argument('--seed', type=int, default=None)
    predict.set_defaults(func=cmd_predict)
    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)
    if args.seed is not None:
        random.seed(args.seed)
        np.random.seed(args.seed)
    return args.func(args)


if __name__ == '__main__':
    main()
