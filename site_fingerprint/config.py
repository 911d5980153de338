"""Default paths and hyperparameters shared by the training and prediction drivers."""

# --- Paths ---
FEATURES_CSV_PATH = "data/tls_features.csv"
LABEL_MAP_PATH = "data/site_labels.csv"
MODEL_PATH = "data/tls_model.bin"

# --- Hyperparameters ---
LEARNING_RATE = 0.01            # Per-sample SGD step size
EPOCHS = 50
BATCH_SIZE = 32
HIDDEN_SIZES = (64,)            # Fully connected hidden layers
CONV_CHANNELS = 0               # 0 disables the Conv1D front end
CONV_KERNEL_SIZE = 5
CONV_STRIDE = 2
CONV_PADDING = 2
WEIGHT_INIT = "xavier"
LR_DECAY = 0.5                  # Multiplied into the learning rate every LR_DECAY_EVERY epochs
LR_DECAY_EVERY = 20
PATIENCE = 15                   # Epochs without test improvement before stopping

# Training stops once both accuracies are exceeded
TARGET_TRAIN_ACCURACY = 0.99
TARGET_TEST_ACCURACY = 0.95

# --- Numerical guards ---
LOSS_CEILING = 5.0              # Samples with a larger loss are skipped
CLIP_NORM = 1.0                 # L2 cap on every back-propagated gradient

# --- Dataset ---
TEST_RATIO = 0.2
BALANCE_NOISE_STD = 0.02
