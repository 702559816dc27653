import json
import logging
import os
import sys

import numpy as np
import wandb

from rmad.data import prepare_data
from rmad.feedforward import FeedForwardNetwork
from rmad.function import Context
from rmad.losses import LOSSES
from rmad.network import NeuralNetworkParameters
from rmad.visitors import FailurePolicy


# Configure logging
def setup_logger(log_level='INFO'):
    log_level_dict = {
        'DEBUG': logging.DEBUG,
        'INFO': logging.INFO,
        'WARNING': logging.WARNING,
        'ERROR': logging.ERROR,
        'CRITICAL': logging.CRITICAL
    }
    level = log_level_dict.get(log_level.upper(), logging.INFO)

    # Create logs directory if it doesn't exist
    os.makedirs('logs', exist_ok=True)

    # Configure logging to file and console
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.FileHandler('logs/rmad.log'),
            logging.StreamHandler(sys.stdout)
        ]
    )
    return logging.getLogger('rmad')


logger = logging.getLogger('rmad')

config = {
    "input_size": 2,
    "hidden_size": 16,
    "output_size": 1,
    "num_layers": 2,
    "clip_value": 4.0,
    "adam_beta1": 0.9,
    "adam_beta2": 0.999,
    "adam_epsilon": 1e-8,
    "leaky_relu_alpha": 0.01,
    "loss": "BinaryCrossEntropyLoss",
    "lr_decay": 1.0,  # multiplied into the learning rate after every epoch
    "num_train": 1024,
    "num_test": 256,
    "noise": 0.1,
}


def save_checkpoint(exp_name, network, epoch, base_dir="experiments"):
    directory = os.path.join(base_dir, exp_name, f"model_{epoch}")
    network.save_weights(directory)
    return directory


def save_experiment(exp_name, config, network, train_losses, test_losses, accuracies, base_dir="experiments"):
    outdir = os.path.join(base_dir, exp_name)
    os.makedirs(outdir, exist_ok=True)

    with open(os.path.join(outdir, 'config.json'), 'w') as f:
        json.dump(config, f, sort_keys=True, indent=4)

    with open(os.path.join(outdir, 'metrics.json'), 'w') as f:
        data = {
            'train_losses': train_losses,
            'test_losses': test_losses,
            'accuracies': accuracies,
        }
        json.dump(data, f, sort_keys=True, indent=4)

    save_checkpoint(exp_name, network, "final", base_dir=base_dir)


class Trainer:
    def __init__(self, network, loss_fn, exp_name, use_wandb=False, base_dir="experiments", loss_params=None):
        self.network = network
        self.loss_fn = loss_fn
        self.loss_params = loss_params or {}
        self.exp_name = exp_name
        self.use_wandb = use_wandb
        self.base_dir = base_dir
        logger.info(f"Trainer initialized with network: {network.__class__.__name__}, wandb: {use_wandb}")
        logger.info(f"Loss: {loss_fn.__name__}, Learning rate: {network.parameters.learning_rate}")

    def train(self, trainloader, testloader, epochs, save_model_every_n_epochs=0, lr_decay=1.0):
        # keep track of losses and accuracies
        train_losses, test_losses, accuracies = [], [], []

        logger.info(f"Starting training for {epochs} epochs")
        logger.info(f"Train batches: {len(trainloader)}, Test batches: {len(testloader)}")

        for i in range(epochs):
            logger.info(f"Starting epoch {i+1}/{epochs}")
            train_loss = self.train_epoch(trainloader)
            accuracy, test_loss = self.evaluate(testloader)
            train_losses.append(train_loss)
            test_losses.append(test_loss)
            accuracies.append(accuracy)

            metrics = {
                "epoch": i + 1,
                "train_loss": train_loss,
                "test_loss": test_loss,
                "accuracy": accuracy,
                "learning_rate": self.network.parameters.learning_rate,
            }
            logger.info(f"Epoch: {i+1}, Train Loss: {train_loss:.4f}, Test Loss: {test_loss:.4f}, Accuracy: {accuracy:.4f}")

            if self.use_wandb:
                logger.debug("Logging metrics to wandb")
                wandb.log(metrics)

            if lr_decay != 1.0:
                self.network.adjust_learning_rate(self.network.parameters.learning_rate * lr_decay)

            if save_model_every_n_epochs > 0 and (i+1) % save_model_every_n_epochs == 0 and i+1 != epochs:
                logger.info(f"Saving checkpoint at epoch {i+1}")
                save_checkpoint(self.exp_name, self.network, i+1, base_dir=self.base_dir)

        logger.info("Saving final experiment results")
        save_experiment(self.exp_name, config, self.network, train_losses, test_losses, accuracies,
                        base_dir=self.base_dir)
        logger.info("Training completed")
        return train_losses, test_losses, accuracies

    def loss_and_gradient(self, output, targets):
        ctx = Context()
        loss = self.loss_fn.evaluate(ctx, output, targets, **self.loss_params)
        gradient, _ = self.loss_fn.differentiate(ctx)[:2]
        return float(loss[0, 0]), gradient

    def train_epoch(self, trainloader):
        """ Train the network """
        total_loss = 0.0
        total_samples = 0

        for batch_idx, (inputs, targets) in enumerate(trainloader):
            inputs, targets = inputs.numpy(), targets.numpy()
            logger.debug(f"Processing batch {batch_idx+1}/{len(trainloader)}, inputs shape: {inputs.shape}")

            output = self.network.forward(inputs)
            loss, gradient = self.loss_and_gradient(output, targets)

            # backpropagate loss and update weights
            self.network.backward(gradient)
            self.network.apply_gradients()

            total_loss += loss * len(inputs)
            total_samples += len(inputs)

            if batch_idx % 50 == 0 and batch_idx > 0:
                logger.info(f"Batch {batch_idx}/{len(trainloader)}, Loss: {loss:.4f}")

        avg_loss = total_loss / max(total_samples, 1)
        logger.info(f"Epoch completed, average loss: {avg_loss:.4f}")
        return avg_loss

    def evaluate(self, testloader):
        total_loss = 0.0
        correct = 0
        total_samples = 0

        for inputs, targets in testloader:
            inputs, targets = inputs.numpy(), targets.numpy()
            output = self.network.forward(inputs)
            loss, _ = self.loss_and_gradient(output, targets)
            total_loss += loss * len(inputs)
            correct += int(np.sum((output > 0.5) == (targets > 0.5)))
            total_samples += len(inputs)

        # the reset drops forward caches left behind by evaluation
        self.network.reset()

        accuracy = correct / max(total_samples, 1)
        avg_loss = total_loss / max(total_samples, 1)
        logger.info(f"Evaluation completed: Loss: {avg_loss:.4f}, Accuracy: {accuracy:.4f}")
        return accuracy, avg_loss


def parse_args(argv=None):
    import argparse

    parser = argparse.ArgumentParser()
    parser.add_argument("--exp_name", type=str, required=True)
    parser.add_argument("--batch-size", type=int, default=16)
    parser.add_argument("--epochs", type=int, default=20)
    parser.add_argument("--lr", type=float, default=1e-2)
    parser.add_argument("--lr-decay", type=float, default=config["lr_decay"])
    parser.add_argument("--num-layers", type=int, default=config["num_layers"])
    parser.add_argument("--hidden-size", type=int, default=config["hidden_size"])
    parser.add_argument("--loss", type=str, default=config["loss"], choices=sorted(LOSSES))
    parser.add_argument("--concurrent-backward", action="store_true",
                        help="Traverse independent backward subtrees on separate threads")
    parser.add_argument("--failure-policy", type=str, default=FailurePolicy.TOLERATE_SINGLE.value,
                        choices=[p.value for p in FailurePolicy])
    parser.add_argument("--seed", type=int, default=0)
    parser.add_argument("--save-model-every", type=int, default=0)
    # wandb arguments
    parser.add_argument("--wandb", action="store_true", help="Enable wandb logging")
    parser.add_argument("--wandb-project", type=str, default="rmad", help="wandb project name")
    parser.add_argument("--wandb-entity", type=str, default=None, help="wandb entity name")
    # logging arguments
    parser.add_argument("--log-level", type=str, default="INFO",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
                        help="Set the logging level")

    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)

    # Setup logging
    global logger
    logger = setup_logger(args.log_level)

    logger.info(f"Starting training with experiment name: {args.exp_name}")
    logger.info(f"Command line arguments: {args}")

    config.update({
        "hidden_size": args.hidden_size,
        "num_layers": args.num_layers,
        "loss": args.loss,
        "lr_decay": args.lr_decay,
    })
    parameters = NeuralNetworkParameters(
        learning_rate=args.lr,
        clip_value=config["clip_value"],
        adam_beta1=config["adam_beta1"],
        adam_beta2=config["adam_beta2"],
        adam_epsilon=config["adam_epsilon"],
        leaky_relu_alpha=config["leaky_relu_alpha"],
        batch_size=args.batch_size,
        run_sequentially=not args.concurrent_backward,
        failure_policy=FailurePolicy(args.failure_policy),
    )
    logger.info(f"Network parameters: {parameters}")

    # Initialize wandb if enabled
    if args.wandb:
        logger.info(f"Initializing wandb with project: {args.wandb_project}, entity: {args.wandb_entity}")
        try:
            wandb.init(
                project=args.wandb_project,
                entity=args.wandb_entity,
                name=args.exp_name,
                config={**config, "batch_size": args.batch_size, "epochs": args.epochs, "learning_rate": args.lr},
            )
            logger.info("wandb initialized successfully")
        except Exception as e:
            logger.error(f"Error initializing wandb: {e}")
            logger.warning("Continuing without wandb")
            args.wandb = False

    trainloader, testloader = prepare_data(
        batch_size=args.batch_size,
        num_train=config["num_train"],
        num_test=config["num_test"],
        noise=config["noise"],
        seed=args.seed,
    )

    network = FeedForwardNetwork(
        config["input_size"], config["hidden_size"], config["output_size"], config["num_layers"],
        parameters=parameters, seed=args.seed,
    ).initialize()

    loss_params = {"delta": parameters.huber_loss_delta} if args.loss == "HuberLoss" else {}
    trainer = Trainer(network, LOSSES[args.loss], args.exp_name, use_wandb=args.wandb, loss_params=loss_params)
    trainer.train(trainloader, testloader, args.epochs,
                  save_model_every_n_epochs=args.save_model_every, lr_decay=args.lr_decay)

    # Close wandb run
    if args.wandb:
        logger.info("Finishing wandb run")
        wandb.finish()


if __name__ == "__main__":
    main()
